"""
Install states, the per-install state machine, and the OS status receiver.

OS callbacks and installer progress are published onto an input EventBus;
InstallSession consumes it, drops illegal or late events, and republishes
the accepted states on its own bus for the UI.
"""
import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

from . import config
from .events import EventBus, Subscription
from .models import AppMetadata
from .workers import io_executor

logger = logging.getLogger("privbroker.install")


@dataclass(frozen=True)
class ConfirmationRequest:
    """What the OS wants the user to confirm: the embedded intent, normalized."""
    action: str
    package: str = ""
    session_id: Optional[int] = None
    extras: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def parse_confirmation(payload: Any) -> Optional[ConfirmationRequest]:
    """Normalize the embedded confirmation intent. None if it is missing or malformed."""
    if isinstance(payload, ConfirmationRequest):
        return payload
    if not isinstance(payload, Mapping):
        return None
    action = payload.get("action")
    if not isinstance(action, str) or not action:
        return None
    extras = payload.get("extras") or {}
    if not isinstance(extras, Mapping):
        return None
    session_id = extras.get(config.EXTRA_SESSION_ID)
    return ConfirmationRequest(
        action=action,
        package=str(payload.get("package") or ""),
        session_id=session_id if isinstance(session_id, int) else None,
        extras=dict(extras),
    )


# ============= States =============

@dataclass(frozen=True)
class InstallState:
    @property
    def is_terminal(self) -> bool:
        return False

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Idle(InstallState):
    pass


@dataclass(frozen=True)
class Parsing(InstallState):
    pass


@dataclass(frozen=True)
class ReadyToInstall(InstallState):
    metadata: AppMetadata
    is_update: bool
    is_downgrade: bool = False
    old_version: Optional[str] = None


@dataclass(frozen=True)
class Installing(InstallState):
    progress: float = 0.0


@dataclass(frozen=True)
class Success(InstallState):
    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class Error(InstallState):
    message: str = "Unknown Error"

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class UserConfirmationRequired(InstallState):
    confirmation: ConfirmationRequest


TRANSITIONS = {
    Idle: (Parsing, Installing, Error),
    Parsing: (Parsing, ReadyToInstall, Installing, Error),
    ReadyToInstall: (Parsing, Installing, Error),
    Installing: (Installing, Success, Error, UserConfirmationRequired),
    UserConfirmationRequired: (Installing, Success, Error, UserConfirmationRequired),
    Success: (),
    Error: (),
}


class InstallSession:
    """
    State machine for one install. Success and Error are terminal: anything
    arriving after them is ignored until reset() starts the next install.
    """

    def __init__(self, events: EventBus, states: Optional[EventBus] = None):
        self.events = events
        self.states = states if states is not None else EventBus(Idle())
        self._state: InstallState = Idle()
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

    @property
    def state(self) -> InstallState:
        return self._state

    def apply(self, new: InstallState) -> bool:
        """Advance to new if the transition is legal. Returns whether it was taken."""
        with self._lock:
            current = self._state
            if current.is_terminal:
                logger.debug("Ignoring %s after terminal %s", new.name, current.name)
                return False
            if type(new) not in TRANSITIONS[type(current)]:
                logger.warning("Ignoring illegal install transition %s -> %s", current.name, new.name)
                return False
            self._state = new
            self.states.publish(new)
        logger.debug("Install state %s -> %s", current.name, new)
        return True

    def reset(self) -> None:
        with self._lock:
            self._state = Idle()
            self.states.publish(self._state)

    async def run(self) -> None:
        """
        Consume the input bus until cancelled. A terminal state replayed on
        subscribe belongs to an earlier install and is skipped.
        """
        with self.events.subscribe() as subscription:
            self._subscription = subscription
            skip_replay = subscription.replayed
            try:
                async for state in subscription:
                    if skip_replay:
                        skip_replay = False
                        if state.is_terminal:
                            logger.debug("Skipping replayed %s from an earlier install", state.name)
                            continue
                    self.apply(state)
            finally:
                self._subscription = None

    async def settle(self) -> None:
        """Wait until every state already published has been applied."""
        await asyncio.sleep(0)
        while self._subscription is not None and self._subscription.pending:
            await asyncio.sleep(0)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


# ============= OS status callback =============

class PendingResult(Protocol):
    def finish(self) -> None: ...


def status_to_state(extras: Mapping[str, Any]) -> Optional[InstallState]:
    """Map install status extras to a state. None means: publish nothing."""
    raw = extras.get(config.EXTRA_STATUS)
    status = raw if isinstance(raw, int) and not isinstance(raw, bool) else None

    if status == config.STATUS_SUCCESS:
        return Success()

    if status == config.STATUS_PENDING_USER_ACTION:
        confirmation = parse_confirmation(extras.get(config.EXTRA_INTENT))
        if confirmation is None:
            logger.warning("Pending user action without a usable confirmation intent, dropped")
            return None
        return UserConfirmationRequired(confirmation)

    message = extras.get(config.EXTRA_STATUS_MESSAGE)
    if message is None:
        message = "Unknown Error"
    code = status if status is not None else "unknown"
    return Error(f"Install Failed ({code}): {message}")


class InstallStatusReceiver:
    """
    Receives the status broadcast of an install transaction.

    The pending result is finished only after the state is on the bus, and
    always, whatever happens while handling the intent.
    """

    def __init__(self, bus: EventBus):
        self.bus = bus

    def on_receive(self, intent: Mapping[str, Any], pending: Optional[PendingResult] = None) -> None:
        try:
            if intent.get("action") != config.ACTION_INSTALL_STATUS:
                return
            state = status_to_state(intent.get("extras") or {})
            if state is not None:
                self.bus.publish(state)
        finally:
            if pending is not None:
                pending.finish()

    def dispatch(self, intent: Mapping[str, Any], pending: Optional[PendingResult] = None) -> Future:
        """Handle the intent on the I/O pool, off the caller's thread."""
        return io_executor().submit(self.on_receive, intent, pending)
