"""
phone_auth/audit.py

Tamper-evident security audit log for device binding decisions.

One binding decision per JSONL line (issued / denied / approved), chained as

  head_0 = 64 zero hex digits
  head_n = sha3_256(raw(head_{n-1}) + canonical_json(event))

with prev_hash and hash stored on every line (64 hex chars each).

Events record session previews, cookie names and request metadata. They never
record the binding secret.

Editing, dropping or reordering a line breaks verify_chain(). The current head
lives in binding_audit.state; writers serialise on binding_audit.lock (flock).
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "binding_audit.jsonl"
STATE_NAME = "binding_audit.state"
LOCK_NAME = "binding_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def build_common(
    *,
    session_key: Optional[str],
    cookie_name: Optional[str] = None,
    strategy: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.

    The session key is stored as a SHA3-256 digest plus a short preview, so the
    log can correlate events without holding a usable key.
    """
    out: Dict[str, Any] = {"ts": int(time.time())}

    if session_key:
        out["session_sha3_256"] = _sha3_256_hex(session_key.encode("utf-8"))
        out["session_preview"] = session_key[:8]
    if cookie_name:
        out["cookie_name"] = cookie_name
    if strategy:
        out["strategy"] = strategy
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    return out


class AuditLog:
    def __init__(self, directory: Path | str, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64 or any(c not in "0123456789abcdef" for c in s):
            return GENESIS_HASH
        return s

    def append_event(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining. Returns the new chain head.

        - locks the lock file
        - reads prev hash
        - computes next hash over canonical event (excluding hash fields)
        - writes JSONL line containing prev_hash + hash
        - updates state file
        """
        if not self.enabled:
            return None

        self.directory.mkdir(parents=True, exist_ok=True)

        # We lock a dedicated lock file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def verify_chain(self) -> bool:
        """Recompute the chain over the whole log. True if intact (or empty)."""
        if not self.log_path.exists():
            return True

        prev = GENESIS_HASH
        with open(self.log_path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                try:
                    obj = json.loads(raw_line.decode("utf-8"))
                except ValueError:
                    return False

                if obj.get("prev_hash") != prev:
                    return False

                body = dict(obj)
                body.pop("prev_hash", None)
                line_hash = body.pop("hash", None)

                expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(body))
                if expect != line_hash:
                    return False

                prev = line_hash

        return True
