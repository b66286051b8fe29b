# phone_auth/registry.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# The provider hands out a per-session status_url at prepare time. The browser
# never sees it directly: it polls /status-proxy/{session_key} and the server
# looks the URL up here.
#
#   - In-memory, single process. Entries are NOT shared across Uvicorn workers.
#   - Entries are immutable after put(); polling never extends a session.
#   - Expiry is enforced twice: lazily on get() and by a periodic sweep task.
#   - One lock guards the map. Nothing blocking happens while it is held.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .logging import get_logger, preview

log = get_logger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    polling_url: str
    created_at: float
    expires_at: float


class SessionRegistry:
    """session_key -> polling URL with a fixed TTL."""

    def __init__(
        self,
        ttl_seconds: float = 300,
        sweep_interval_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def put(self, session_key: str, polling_url: str) -> None:
        now = self._clock()
        entry = RegistryEntry(polling_url=polling_url, created_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            self._entries[session_key] = entry

    def entry(self, session_key: str) -> Optional[RegistryEntry]:
        """Return the live entry, evicting it if it has expired."""
        with self._lock:
            entry = self._entries.get(session_key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[session_key]
                return None
            return entry

    def get(self, session_key: str) -> Optional[str]:
        entry = self.entry(session_key)
        return entry.polling_url if entry else None

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            dead = [k for k, v in self._entries.items() if v.expires_at <= now]
            for k in dead:
                del self._entries[k]
        if dead:
            log.debug("registry_swept", removed=len(dead), sessions=[preview(k) for k in dead])
        return len(dead)

    # -------------------------------------------------------------------------
    # Lifecycle (owned sweep task)
    # -------------------------------------------------------------------------
    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception:
                log.exception("registry_sweep_failed")
