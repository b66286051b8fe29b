# phone_auth/orchestrator.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Client-side driver for one authentication attempt:
#
#   Idle -> Preparing -> AwaitingCredential -> Processing -> Completed
#                     \-> Polling ----------/
#   (any active phase) -> Failed | Cancelled
#
# Two layers:
#   - transition(state, event, config): pure reducer over frozen dataclasses.
#     Every rule (silent retry bound, one-time budget widening, manual retry
#     re-entry point, cancellation) lives here and is testable without I/O.
#   - AuthenticationOrchestrator: asyncio runner that performs the I/O for the
#     current phase and feeds the outcome back as an event.
#
# Ownership:
#   - the orchestrator owns exactly one asyncio.Task per attempt; starting a
#     new attempt, cancel() and close() all tear it down
#   - every event is stamped with the attempt_id it was produced under; events
#     from a superseded attempt are discarded, never committed
#   - deadlines are anchor + budget; the anchor is fixed when the credential or
#     polling step begins, polls never move it
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .errors import (
    AuthenticationDenied,
    AuthenticationTimeout,
    BindingViolation,
    CredentialDenied,
    PhoneAuthError,
    SessionNotFound,
    TransientNetworkError,
    UnexpectedError,
    UnsupportedPlatform,
    UpstreamError,
    ValidationError,
)
from .gateway import AuthRequest, BackendGateway, CredentialSource, PollStatus, PreparedSession
from .logging import get_logger, preview

log = get_logger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    AWAITING_CREDENTIAL = "awaiting_credential"
    POLLING = "polling"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_PHASES = frozenset({Phase.PREPARING, Phase.AWAITING_CREDENTIAL, Phase.POLLING, Phase.PROCESSING})
TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED, Phase.CANCELLED})


@dataclass(frozen=True)
class OrchestratorConfig:
    base_timeout_ms: int = 30_000
    extended_timeout_ms: int = 120_000
    max_silent_retries: int = 2
    poll_interval_ms: int = 2_000
    retry_delay_ms: int = 500


@dataclass(frozen=True)
class Failure:
    """What a Failed attempt shows the user: a message plus the machine code."""

    code: str
    message: str
    kind: str
    retryable: bool
    request_id: Optional[str] = None

    @classmethod
    def from_error(cls, err: PhoneAuthError) -> "Failure":
        if isinstance(err, BindingViolation):
            kind = "binding"
        elif isinstance(err, TransientNetworkError):
            kind = "network"
        elif isinstance(err, AuthenticationTimeout):
            kind = "timeout"
        elif isinstance(err, (AuthenticationDenied, CredentialDenied)):
            kind = "denied"
        elif isinstance(err, UnsupportedPlatform):
            kind = "unsupported"
        elif isinstance(err, ValidationError):
            kind = "validation"
        elif isinstance(err, SessionNotFound):
            kind = "session_not_found"
        elif isinstance(err, UpstreamError):
            kind = "upstream"
        else:
            kind = "unexpected"
        return cls(
            code=err.code,
            message=err.message,
            kind=kind,
            # a lost binding secret cannot be retried, only restarted
            retryable=kind != "binding",
            request_id=getattr(err, "request_id", None),
        )


@dataclass(frozen=True)
class AttemptState:
    phase: Phase = Phase.IDLE
    attempt_id: int = 0
    retry_count: int = 0
    cross_device_detected: bool = False
    timeout_budget_ms: int = 30_000
    anchor_ms: Optional[float] = None
    request: Optional[AuthRequest] = None
    session: Optional[PreparedSession] = None
    credential: Any = None
    result: Optional[Dict[str, Any]] = None
    failure: Optional[Failure] = None

    @property
    def deadline_ms(self) -> Optional[float]:
        if self.anchor_ms is None:
            return None
        return self.anchor_ms + self.timeout_budget_ms

    @property
    def active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Start:
    attempt_id: int
    request: AuthRequest


@dataclass(frozen=True)
class Prepared:
    session: PreparedSession
    now_ms: float


@dataclass(frozen=True)
class CredentialObtained:
    credential: Any


@dataclass(frozen=True)
class PollPending:
    now_ms: float


@dataclass(frozen=True)
class PollApproved:
    credential: Any = None


@dataclass(frozen=True)
class ProcessSucceeded:
    result: Dict[str, Any]


@dataclass(frozen=True)
class Failed:
    error: PhoneAuthError


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class Retry:
    attempt_id: int
    now_ms: float


Event = Union[Start, Prepared, CredentialObtained, PollPending, PollApproved, ProcessSucceeded, Failed, Cancel, Retry]


def _silently_retryable(state: AttemptState, err: PhoneAuthError) -> bool:
    if isinstance(err, TransientNetworkError):
        return state.phase in (Phase.PREPARING, Phase.POLLING, Phase.PROCESSING)
    # a dismissed platform prompt can simply be shown again
    if isinstance(err, CredentialDenied):
        return state.phase is Phase.AWAITING_CREDENTIAL
    return False


def _step_phase(session: PreparedSession) -> Phase:
    return Phase.POLLING if session.strategy.out_of_band else Phase.AWAITING_CREDENTIAL


def transition(state: AttemptState, event: Event, config: OrchestratorConfig = OrchestratorConfig()) -> AttemptState:
    """
    Pure reducer. Events that make no sense in the current phase return the
    state unchanged (same object), which callers use to detect no-ops.
    """
    if isinstance(event, Start):
        return AttemptState(
            phase=Phase.PREPARING,
            attempt_id=event.attempt_id,
            timeout_budget_ms=config.base_timeout_ms,
            request=event.request,
        )

    if isinstance(event, Retry):
        if state.phase not in (Phase.FAILED, Phase.CANCELLED):
            return state
        restart = state.session is None or (state.failure is not None and state.failure.kind == "binding")
        if restart:
            return AttemptState(
                phase=Phase.PREPARING,
                attempt_id=event.attempt_id,
                timeout_budget_ms=config.base_timeout_ms,
                request=state.request,
            )
        return replace(
            state,
            phase=_step_phase(state.session),
            attempt_id=event.attempt_id,
            retry_count=0,
            anchor_ms=event.now_ms,
            credential=None,
            result=None,
            failure=None,
        )

    if isinstance(event, Cancel):
        if not state.active:
            return state
        return replace(state, phase=Phase.CANCELLED, failure=None)

    if isinstance(event, Failed):
        if not state.active:
            return state
        if _silently_retryable(state, event.error) and state.retry_count < config.max_silent_retries:
            return replace(state, retry_count=state.retry_count + 1)
        return replace(state, phase=Phase.FAILED, failure=Failure.from_error(event.error))

    if isinstance(event, Prepared):
        if state.phase is not Phase.PREPARING:
            return state
        return replace(
            state,
            phase=_step_phase(event.session),
            session=event.session,
            anchor_ms=event.now_ms,
        )

    if isinstance(event, CredentialObtained):
        if state.phase is not Phase.AWAITING_CREDENTIAL:
            return state
        return replace(state, phase=Phase.PROCESSING, credential=event.credential)

    if isinstance(event, PollPending):
        if state.phase is not Phase.POLLING:
            return state
        new = state
        if not state.cross_device_detected:
            # first pending answer: the user is on another device/app, give
            # them the long budget. Once per attempt.
            new = replace(
                new,
                cross_device_detected=True,
                timeout_budget_ms=max(state.timeout_budget_ms, config.extended_timeout_ms),
            )
        if new.deadline_ms is not None and event.now_ms >= new.deadline_ms:
            return replace(
                new,
                phase=Phase.FAILED,
                failure=Failure.from_error(AuthenticationTimeout("Timed out waiting for authentication", code="POLLING_TIMEOUT")),
            )
        return new

    if isinstance(event, PollApproved):
        if state.phase is not Phase.POLLING:
            return state
        return replace(state, phase=Phase.PROCESSING, credential=event.credential)

    if isinstance(event, ProcessSucceeded):
        if state.phase is not Phase.PROCESSING:
            return state
        return replace(state, phase=Phase.COMPLETED, result=event.result)

    return state


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------
def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class AuthenticationOrchestrator:
    """
    Drives one attempt at a time against a BackendGateway and a CredentialSource.

    clock returns milliseconds; sleep takes seconds (asyncio.sleep signature).
    present_channel is called when an out-of-band channel (QR / redirect)
    needs to be shown. on_change receives every committed state.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        credential_source: CredentialSource,
        *,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], float] = _monotonic_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        present_channel: Optional[Callable[[PreparedSession], Any]] = None,
        on_change: Optional[Callable[[AttemptState], Any]] = None,
    ):
        self.gateway = gateway
        self.credential_source = credential_source
        self.config = config or OrchestratorConfig()
        self._clock = clock
        self._sleep = sleep
        self._present_channel = present_channel
        self._on_change = on_change
        self._state = AttemptState(timeout_budget_ms=self.config.base_timeout_ms)
        self._task: Optional[asyncio.Task] = None
        self._last_attempt_id = 0
        # terminal state of each attempt still awaited by its start()/retry()
        self._ended: Dict[int, AttemptState] = {}

    @property
    def state(self) -> AttemptState:
        return self._state

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    async def start(self, request: AuthRequest) -> AttemptState:
        """Start a fresh attempt (tearing down any previous one) and run it to a terminal phase."""
        attempt_id = self._next_attempt_id()
        await self._teardown()
        if self._superseded(attempt_id):
            return AttemptState(phase=Phase.CANCELLED, attempt_id=attempt_id, request=request)
        self._commit(attempt_id, Start(attempt_id, request), force=True)
        return await self._launch(attempt_id)

    async def retry(self) -> AttemptState:
        """Manual retry from Failed/Cancelled, re-entering at the last phase boundary."""
        if self._state.phase not in (Phase.FAILED, Phase.CANCELLED):
            return self._state
        attempt_id = self._next_attempt_id()
        await self._teardown()
        if self._superseded(attempt_id):
            return replace(self._state, phase=Phase.CANCELLED, attempt_id=attempt_id)
        self._commit(attempt_id, Retry(attempt_id, self._clock()), force=True)
        reentered = self._state.phase in (Phase.AWAITING_CREDENTIAL, Phase.POLLING)
        return await self._launch(attempt_id, enter_step=reentered)

    def cancel(self) -> None:
        """Stop the in-flight attempt; it ends Cancelled (not Failed)."""
        state = self._state
        if state.active:
            self._commit(state.attempt_id, Cancel())
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def close(self) -> None:
        self.cancel()
        await self._teardown()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    def _next_attempt_id(self) -> int:
        self._last_attempt_id += 1
        return self._last_attempt_id

    def _commit(self, attempt_id: int, event: Event, force: bool = False) -> bool:
        if not force and attempt_id != self._state.attempt_id:
            log.debug("stale_event_discarded", attempt_id=attempt_id, event_type=type(event).__name__)
            return False
        new = transition(self._state, event, self.config)
        if new is self._state:
            return False
        self._state = new
        if new.terminal:
            self._ended[new.attempt_id] = new
        if self._on_change is not None:
            self._on_change(new)
        return True

    def _superseded(self, attempt_id: int) -> bool:
        # a newer start()/retry() arrived while this one was tearing down
        return attempt_id != self._last_attempt_id

    def _current(self, attempt_id: int, phase: Phase) -> bool:
        return self._state.attempt_id == attempt_id and self._state.phase is phase

    async def _teardown(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _launch(self, attempt_id: int, enter_step: bool = False) -> AttemptState:
        task = asyncio.get_running_loop().create_task(self._drive(attempt_id, enter_step))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        finally:
            if self._task is task:
                self._task = None
            ended = self._ended.pop(attempt_id, None)
        if self._state.attempt_id == attempt_id:
            return self._state
        # superseded: report how this attempt ended, not the newer one
        return ended or AttemptState(phase=Phase.CANCELLED, attempt_id=attempt_id)

    async def _drive(self, attempt_id: int, enter_step: bool = False) -> None:
        try:
            if enter_step:
                await self._enter_step(attempt_id)
            while self._state.attempt_id == attempt_id and self._state.active:
                phase = self._state.phase
                if phase is Phase.PREPARING:
                    await self._do_prepare(attempt_id)
                elif phase is Phase.AWAITING_CREDENTIAL:
                    await self._do_credential(attempt_id)
                elif phase is Phase.POLLING:
                    await self._do_poll(attempt_id)
                elif phase is Phase.PROCESSING:
                    await self._do_process(attempt_id)
        except asyncio.CancelledError:
            self._commit(attempt_id, Cancel())
            raise

    async def _fail(self, attempt_id: int, err: PhoneAuthError) -> None:
        before = self._state
        self._commit(attempt_id, Failed(err))
        after = self._state
        if after.attempt_id == attempt_id and after.active and after.retry_count > before.retry_count:
            log.info(
                "silent_retry",
                phase=after.phase.value,
                retry_count=after.retry_count,
                code=err.code,
            )
            await self._sleep(self.config.retry_delay_ms / 1000.0)
        elif after.phase is Phase.FAILED:
            log.warning("attempt_failed", code=err.code, kind=after.failure.kind if after.failure else None)

    async def _enter_step(self, attempt_id: int) -> None:
        """Show the out-of-band channel if any, and report the invocation (best-effort)."""
        session = self._state.session
        if session is None:
            return
        if session.strategy.out_of_band and self._present_channel is not None:
            self._present_channel(session)
        try:
            await self.gateway.invoke(session.session_key)
        except Exception as e:
            log.debug("invoke_ignored", session=preview(session.session_key), error=str(e)[:200])

    async def _do_prepare(self, attempt_id: int) -> None:
        request = self._state.request
        try:
            session = await self.gateway.prepare(request)
        except PhoneAuthError as e:
            await self._fail(attempt_id, e)
            return
        except Exception as e:
            log.exception("prepare_unexpected")
            await self._fail(attempt_id, UnexpectedError(details={"message": str(e)[:200]}))
            return

        if self._commit(attempt_id, Prepared(session, self._clock())):
            log.info("prepared", strategy=session.strategy.value, session=preview(session.session_key))
            await self._enter_step(attempt_id)

    async def _do_credential(self, attempt_id: int) -> None:
        state = self._state
        remaining_ms = (state.deadline_ms or 0) - self._clock()
        if remaining_ms <= 0:
            await self._fail(attempt_id, AuthenticationTimeout("Timed out waiting for the credential prompt", code="CREDENTIAL_TIMEOUT"))
            return

        try:
            credential = await asyncio.wait_for(
                self.credential_source.get_credential(state.session.prompt),
                timeout=remaining_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            await self._fail(attempt_id, AuthenticationTimeout("Timed out waiting for the credential prompt", code="CREDENTIAL_TIMEOUT"))
            return
        except PhoneAuthError as e:
            await self._fail(attempt_id, e)
            return
        except Exception as e:
            log.exception("credential_unexpected")
            await self._fail(attempt_id, UnexpectedError(details={"message": str(e)[:200]}))
            return

        self._commit(attempt_id, CredentialObtained(credential))

    async def _do_poll(self, attempt_id: int) -> None:
        state = self._state
        if state.deadline_ms is not None and self._clock() >= state.deadline_ms:
            await self._fail(attempt_id, AuthenticationTimeout("Timed out waiting for authentication", code="POLLING_TIMEOUT"))
            return

        try:
            update = await self.gateway.status(state.session.session_key)
        except PhoneAuthError as e:
            await self._fail(attempt_id, e)
            return
        except Exception as e:
            log.exception("poll_unexpected")
            await self._fail(attempt_id, UnexpectedError(details={"message": str(e)[:200]}))
            return

        if update.status is PollStatus.APPROVED:
            self._commit(attempt_id, PollApproved(update.credential))
            return
        if update.status is PollStatus.DENIED:
            message = str(update.body.get("message") or "Authentication was denied")
            await self._fail(attempt_id, AuthenticationDenied(message))
            return

        self._commit(attempt_id, PollPending(self._clock()))
        if self._current(attempt_id, Phase.POLLING):
            remaining_ms = self._state.deadline_ms - self._clock()
            await self._sleep(max(min(self.config.poll_interval_ms, remaining_ms), 0) / 1000.0)

    async def _do_process(self, attempt_id: int) -> None:
        state = self._state
        try:
            result = await self.gateway.process(state.request.use_case, state.session, state.credential)
        except PhoneAuthError as e:
            await self._fail(attempt_id, e)
            return
        except Exception as e:
            log.exception("process_unexpected")
            await self._fail(attempt_id, UnexpectedError(details={"message": str(e)[:200]}))
            return

        self._commit(attempt_id, ProcessSucceeded(result))


__all__ = [
    "ACTIVE_PHASES",
    "AttemptState",
    "AuthenticationOrchestrator",
    "Cancel",
    "CredentialObtained",
    "Failed",
    "Failure",
    "OrchestratorConfig",
    "Phase",
    "PollApproved",
    "PollPending",
    "Prepared",
    "ProcessSucceeded",
    "Retry",
    "Start",
    "TERMINAL_PHASES",
    "transition",
]
