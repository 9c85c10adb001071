"""
Privilege backends: Root (shell), Shizuku (binder + handshake), Dhizuku (binder + newProcess).

Every public operation returns an Outcome. Exceptions stop at this boundary.
"""
import functools
import logging
import threading
import traceback
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from . import binder, config
from .binder import BinderBridge, BinderInvoker
from .errors import BackendUnavailable, BrokerError, InvocationError
from .models import BackendCapability, ExecResult, Outcome, ShizukuState
from .shell import ShellSession, default_session
from .workers import run_blocking
from ..utils.shell_text import escape

logger = logging.getLogger("privbroker.backends")


class RemoteProcess(Protocol):
    """A process started through a bridge. subprocess.Popen satisfies it."""
    returncode: Optional[int]

    def communicate(self) -> Tuple[Any, Any]: ...


class ShizukuBridge(BinderBridge, Protocol):
    def is_installed(self) -> bool: ...

    def check_self_permission(self) -> bool: ...

    def should_show_rationale(self) -> bool: ...

    def request_permission(self, request_code: int) -> None: ...

    def add_binder_received_listener(self, listener: Callable[[], None]) -> None: ...

    def remove_binder_received_listener(self, listener: Callable[[], None]) -> None: ...

    def add_binder_dead_listener(self, listener: Callable[[], None]) -> None: ...

    def remove_binder_dead_listener(self, listener: Callable[[], None]) -> None: ...

    def add_permission_result_listener(self, listener: Callable[[int, bool], None]) -> None: ...

    def remove_permission_result_listener(self, listener: Callable[[int, bool], None]) -> None: ...

    def new_process(self, argv: Sequence[str]) -> RemoteProcess: ...


class DhizukuBridge(BinderBridge, Protocol):
    def is_permission_granted(self) -> bool: ...

    def new_process(self, argv: Sequence[str]) -> RemoteProcess: ...


class PrivilegeBackend(Protocol):
    """The capability contract shared by all three backends."""
    capability: BackendCapability

    async def is_available(self) -> bool: ...

    async def force_stop(self, package: str) -> Outcome: ...

    async def set_disabled(self, package: str, disabled: bool) -> Outcome: ...

    async def is_app_disabled(self, package: str) -> Optional[bool]: ...

    async def clear_cache(self, package: str) -> Outcome: ...

    async def uninstall(self, package: str) -> Outcome: ...

    async def install(self, apk_path: str, can_downgrade: bool = False) -> Outcome: ...

    async def reboot(self, reason: str = "") -> Outcome: ...

    async def execute(self, command: str) -> ExecResult: ...

    async def cache_size(self, package: str) -> int: ...


def _decode(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    if hasattr(data, "read"):
        return _decode(data.read())
    return str(data)


def collect_process(process: RemoteProcess) -> ExecResult:
    """Exit code plus stdout, or stderr when stdout is blank."""
    out, err = process.communicate()
    out, err = _decode(out), _decode(err)
    code = process.returncode if process.returncode is not None else -1
    return ExecResult(code, out if out.strip() else err)


def install_command(apk_path: str, can_downgrade: bool = False) -> str:
    return f"pm install -r -g{' -d' if can_downgrade else ''} {escape(apk_path)}"


def guarded(fn):
    """Turn whatever an operation raises into an Outcome for its backend."""
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs) -> Outcome:
        try:
            return await fn(self, *args, **kwargs)
        except BackendUnavailable as e:
            return Outcome.unavailable(self.capability, str(e))
        except BrokerError as e:
            logger.warning("%s %s failed: %s", self.capability.value, fn.__name__, e)
            return Outcome.failure(self.capability, str(e))
        except Exception as e:
            logger.exception("Unexpected fault in %s %s", self.capability.value, fn.__name__)
            return Outcome.unavailable(self.capability, f"Unexpected error: {e}")
    return wrapper


def _exec_outcome(capability: BackendCapability, result: ExecResult, what: str) -> Outcome:
    if result.is_success:
        return Outcome.success(capability, result.output)
    return Outcome.failure(capability, f"{what} failed ({result.exit_code}): {result.output.strip()}",
                           result.output)


# ============= Root =============

class RootBackend:
    """Every operation is a command line run in the shared root shell."""
    capability = BackendCapability.ROOT

    def __init__(self, session: Optional[ShellSession] = None):
        self.session = session if session is not None else default_session()

    async def is_available(self) -> bool:
        return await self.session.is_root_available()

    async def _require_root(self) -> None:
        if not await self.session.is_root_available():
            raise BackendUnavailable("Root access is not granted")

    async def _run(self, *commands: str) -> Outcome:
        await self._require_root()
        result = await self.session.run(list(commands))
        output = "\n".join(result.stdout)
        if result.is_success:
            return Outcome.success(self.capability, output)
        detail = "\n".join(result.stderr) or output or f"exit code {result.exit_code}"
        return Outcome.failure(self.capability, f"Shell command failed: {detail}", output)

    @guarded
    async def force_stop(self, package: str) -> Outcome:
        return await self._run(f"am force-stop {escape(package)}")

    @guarded
    async def set_disabled(self, package: str, disabled: bool) -> Outcome:
        return await self._run(f"pm {'disable' if disabled else 'enable'} {escape(package)}")

    async def is_app_disabled(self, package: str) -> Optional[bool]:
        try:
            await self._require_root()
            result = await self.session.run(f"pm list packages -d {escape(package)}")
        except BrokerError as e:
            logger.warning("Cannot read enabled state of %s: %s", package, e)
            return None
        return f"package:{package}" in result.stdout

    @guarded
    async def clear_cache(self, package: str) -> Outcome:
        return await self._run(f"rm -rf /data/data/{escape(package)}/cache")

    @guarded
    async def uninstall(self, package: str) -> Outcome:
        return await self._run(f"pm uninstall --user 0 {escape(package)}")

    @guarded
    async def install(self, apk_path: str, can_downgrade: bool = False) -> Outcome:
        return await self._run(install_command(apk_path, can_downgrade))

    @guarded
    async def reboot(self, reason: str = "") -> Outcome:
        arg = f" {escape(reason)}" if reason else ""
        return await self._run(f"svc power reboot{arg} || reboot{arg}")

    async def execute(self, command: str) -> ExecResult:
        try:
            await self._require_root()
            result = await self.session.run(command)
        except BrokerError as e:
            return ExecResult(-1, str(e))
        output = "\n".join(result.stdout) if result.stdout else "\n".join(result.stderr)
        return ExecResult(result.exit_code, output)

    async def cache_size(self, package: str) -> int:
        """Bytes in the app's internal cache dir, -1 when it cannot be read."""
        try:
            await self._require_root()
            result = await self.session.run(f"du -k -s /data/data/{escape(package)}/cache")
            return int(result.stdout[0].split()[0]) * 1024
        except (BrokerError, IndexError, ValueError) as e:
            logger.debug("Cache size of %s unavailable: %s", package, e)
            return -1

    # ============= Root-only extras =============

    @guarded
    async def get_app_paths(self, package: str) -> Outcome:
        """APK paths (base + splits), one per line in output."""
        outcome = await self._run(f"pm path {escape(package)}")
        if not outcome.ok:
            return outcome
        paths = [line.strip().removeprefix("package:").strip()
                 for line in outcome.output.splitlines() if line.strip()]
        if not paths:
            return Outcome.failure(self.capability, f"No paths found for {package}")
        return Outcome.success(self.capability, "\n".join(paths))

    @guarded
    async def reinstall_with_google(self, package: str) -> Outcome:
        """Reinstall over itself with the Play Store recorded as installer."""
        await self._require_root()
        paths = await self.session.fast_cmd(f"pm path {escape(package)} | sed 's/package://' | tr '\\n' ' '")
        paths = paths.strip()
        if not paths:
            return Outcome.failure(self.capability, f"Could not find APK path for {package}")
        user = (await self.session.fast_cmd("am get-current-user")).strip() or str(config.USER_ID)
        return await self._run(
            f"pm install -r -d -i {escape(config.PLAY_STORE_PACKAGE)} --user {escape(user)} "
            f"--install-reason 0 {' '.join(escape(p) for p in paths.split())}"
        )

    @guarded
    async def copy_file(self, source: str, destination: str) -> Outcome:
        return await self._run(f"cp {escape(source)} {escape(destination)}")


# ============= Binder-backed helpers =============

async def _force_stop(invoker: BinderInvoker, package: str) -> None:
    await invoker.call(binder.FORCE_STOP, package, config.USER_ID)


async def _set_enabled_state(invoker: BinderInvoker, package: str, state: int) -> None:
    await invoker.call(binder.SET_ENABLED, package, state, 0, config.USER_ID, config.CALLER_PACKAGE)


async def _read_disabled(invoker: BinderInvoker, package: str, capability: BackendCapability) -> Optional[bool]:
    try:
        state = await invoker.call(binder.GET_ENABLED, package, config.USER_ID)
    except BrokerError as e:
        logger.warning("%s cannot read enabled state of %s: %s", capability.value, package, e)
        return None
    return state in config.DISABLED_STATES


async def _clear_cache(invoker: BinderInvoker, package: str) -> None:
    try:
        await invoker.call(binder.CLEAR_CACHE, package, None)
    except InvocationError as e:
        logger.debug("deleteApplicationCacheFiles failed (%s), trying the per-user variant", e)
        await invoker.call(binder.CLEAR_CACHE_AS_USER, package, config.USER_ID, None)


async def _execute(bridge: Any, command: str, capability: BackendCapability) -> ExecResult:
    try:
        process = await run_blocking(bridge.new_process, ["sh", "-c", command])
        return await run_blocking(collect_process, process)
    except Exception:
        logger.warning("%s execute failed: %s", capability.value, command)
        return ExecResult(-1, traceback.format_exc())


# ============= Shizuku =============

class ShizukuBackend:
    """
    Binder calls through a running Shizuku server.

    Usable only in ShizukuState.READY; the other states tell the UI what to fix.
    """
    capability = BackendCapability.SHIZUKU

    def __init__(self, bridge: ShizukuBridge, invoker: Optional[BinderInvoker] = None,
                 request_code: int = config.SHIZUKU_REQUEST_CODE):
        self.bridge = bridge
        self.invoker = invoker if invoker is not None else BinderInvoker(bridge)
        self.request_code = request_code
        self._lock = threading.Lock()
        self._request_pending = False
        self._registered = False
        self._granted_listeners: List[Callable[[bool], None]] = []

    def state(self) -> ShizukuState:
        try:
            if not self.bridge.is_installed():
                return ShizukuState.NOT_INSTALLED
            if not self.bridge.ping_binder():
                return ShizukuState.NOT_RUNNING
            if not self.bridge.check_self_permission():
                return ShizukuState.PERMISSION_NEEDED
        except Exception as e:
            logger.debug("Shizuku state probe failed: %s", e)
            return ShizukuState.NOT_RUNNING
        return ShizukuState.READY

    @property
    def request_pending(self) -> bool:
        return self._request_pending

    async def is_available(self) -> bool:
        return await run_blocking(self.state) == ShizukuState.READY

    def check_and_request_permission(self) -> bool:
        """
        True if permission is already granted. Otherwise asks for it once and
        returns False; repeated calls while the request is in flight do nothing.
        """
        state = self.state()
        if state == ShizukuState.READY:
            return True
        if state != ShizukuState.PERMISSION_NEEDED:
            return False
        with self._lock:
            if self._request_pending:
                logger.debug("Shizuku permission request already in flight")
                return False
            self._request_pending = True
        try:
            self.bridge.request_permission(self.request_code)
        except Exception as e:
            with self._lock:
                self._request_pending = False
            logger.warning("Shizuku permission request failed: %s", e)
        return False

    def add_permission_listener(self, listener: Callable[[bool], None]) -> None:
        self._granted_listeners.append(listener)

    def remove_permission_listener(self, listener: Callable[[bool], None]) -> None:
        if listener in self._granted_listeners:
            self._granted_listeners.remove(listener)

    def register(self) -> None:
        if self._registered:
            return
        self.bridge.add_binder_received_listener(self._on_binder_received)
        self.bridge.add_binder_dead_listener(self._on_binder_dead)
        self.bridge.add_permission_result_listener(self._on_permission_result)
        self._registered = True

    def unregister(self) -> None:
        if not self._registered:
            return
        self.bridge.remove_binder_received_listener(self._on_binder_received)
        self.bridge.remove_binder_dead_listener(self._on_binder_dead)
        self.bridge.remove_permission_result_listener(self._on_permission_result)
        self._registered = False

    def _on_binder_received(self) -> None:
        logger.debug("Shizuku binder received")
        if self.state() == ShizukuState.READY:
            self._notify(True)

    def _on_binder_dead(self) -> None:
        logger.info("Shizuku binder died")
        with self._lock:
            self._request_pending = False

    def _on_permission_result(self, request_code: int, granted: bool) -> None:
        if request_code != self.request_code:
            return
        with self._lock:
            self._request_pending = False
        logger.info("Shizuku permission %s", "granted" if granted else "denied")
        self._notify(granted)

    def _notify(self, granted: bool) -> None:
        for listener in list(self._granted_listeners):
            listener(granted)

    async def _require_ready(self) -> None:
        state = await run_blocking(self.state)
        if state != ShizukuState.READY:
            raise BackendUnavailable(f"Shizuku is not available ({state.value})")

    @guarded
    async def force_stop(self, package: str) -> Outcome:
        await self._require_ready()
        await _force_stop(self.invoker, package)
        return Outcome.success(self.capability)

    @guarded
    async def set_disabled(self, package: str, disabled: bool) -> Outcome:
        await self._require_ready()
        state = config.COMPONENT_ENABLED_STATE_DISABLED if disabled else config.COMPONENT_ENABLED_STATE_ENABLED
        await _set_enabled_state(self.invoker, package, state)
        return Outcome.success(self.capability)

    async def is_app_disabled(self, package: str) -> Optional[bool]:
        return await _read_disabled(self.invoker, package, self.capability)

    @guarded
    async def clear_cache(self, package: str) -> Outcome:
        await self._require_ready()
        await _clear_cache(self.invoker, package)
        return Outcome.success(self.capability)

    @guarded
    async def uninstall(self, package: str) -> Outcome:
        await self._require_ready()
        result = await self.execute(f"pm uninstall --user current {escape(package)}")
        return _exec_outcome(self.capability, result, "Uninstall")

    @guarded
    async def install(self, apk_path: str, can_downgrade: bool = False) -> Outcome:
        await self._require_ready()
        result = await self.execute(install_command(apk_path, can_downgrade))
        return _exec_outcome(self.capability, result, "Shizuku install")

    async def reboot(self, reason: str = "") -> Outcome:
        return Outcome.failure(self.capability, "Reboot requires Root. Shizuku cannot perform this action.")

    async def execute(self, command: str) -> ExecResult:
        if await run_blocking(self.state) != ShizukuState.READY:
            return ExecResult(-1, "Shizuku is not available or permission denied.")
        return await _execute(self.bridge, command, self.capability)

    async def cache_size(self, package: str) -> int:
        return -1


# ============= Dhizuku =============

class DhizukuBackend:
    """Binder calls with device-owner rights, plus shell text through newProcess."""
    capability = BackendCapability.DHIZUKU

    def __init__(self, bridge: DhizukuBridge, invoker: Optional[BinderInvoker] = None):
        self.bridge = bridge
        self.invoker = invoker if invoker is not None else BinderInvoker(bridge)

    def _available(self) -> bool:
        try:
            return bool(self.bridge.ping_binder() and self.bridge.is_permission_granted())
        except Exception as e:
            logger.debug("Dhizuku probe failed: %s", e)
            return False

    async def is_available(self) -> bool:
        return await run_blocking(self._available)

    async def _require_available(self) -> None:
        if not await self.is_available():
            raise BackendUnavailable("Dhizuku is not available or permission denied")

    @guarded
    async def force_stop(self, package: str) -> Outcome:
        await self._require_available()
        await _force_stop(self.invoker, package)
        return Outcome.success(self.capability)

    @guarded
    async def set_disabled(self, package: str, disabled: bool) -> Outcome:
        await self._require_available()
        state = config.COMPONENT_ENABLED_STATE_DISABLED_USER if disabled else config.COMPONENT_ENABLED_STATE_ENABLED
        await _set_enabled_state(self.invoker, package, state)
        return Outcome.success(self.capability)

    async def is_app_disabled(self, package: str) -> Optional[bool]:
        return await _read_disabled(self.invoker, package, self.capability)

    @guarded
    async def clear_cache(self, package: str) -> Outcome:
        await self._require_available()
        await _clear_cache(self.invoker, package)
        return Outcome.success(self.capability)

    @guarded
    async def uninstall(self, package: str) -> Outcome:
        await self._require_available()
        result = await self.execute(f"pm uninstall --user current {escape(package)}")
        return _exec_outcome(self.capability, result, "Uninstall")

    @guarded
    async def install(self, apk_path: str, can_downgrade: bool = False) -> Outcome:
        await self._require_available()
        result = await self.execute(install_command(apk_path, can_downgrade))
        return _exec_outcome(self.capability, result, "Dhizuku install")

    async def reboot(self, reason: str = "") -> Outcome:
        return Outcome.failure(self.capability, "Reboot requires Root. Dhizuku cannot perform this action easily.")

    async def execute(self, command: str) -> ExecResult:
        """Never raises: any failure is exit code -1 with the traceback as output."""
        return await _execute(self.bridge, command, self.capability)

    async def cache_size(self, package: str) -> int:
        return -1
