"""
SystemGateway: the application-facing privileged operations.

Picks the first available backend in BACKEND_ORDER for every call and turns
backend outcomes into GatewayResult values. Nothing here raises for expected
conditions.
"""
import importlib
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from . import config
from .backends import DhizukuBackend, PrivilegeBackend, RootBackend, ShizukuBackend
from .errors import VerificationFailed
from .models import (
    BackendCapability,
    ElevationState,
    ExecResult,
    GatewayResult,
    Outcome,
    OutcomeStatus,
    ResultStatus,
    ShizukuState,
)
from .shell import ShellSession
from .workers import run_blocking

logger = logging.getLogger("privbroker.gateway")

NO_ELEVATION_MESSAGE = "No privileged gateway available (Root, Shizuku or Dhizuku required)"

_SHIZUKU_ELEVATION = {
    ShizukuState.NOT_INSTALLED: ElevationState.SHIZUKU_NOT_INSTALLED,
    ShizukuState.NOT_RUNNING: ElevationState.SHIZUKU_NOT_RUNNING,
    ShizukuState.PERMISSION_NEEDED: ElevationState.SHIZUKU_PERMISSION_NEEDED,
    ShizukuState.READY: ElevationState.SHIZUKU_RUNNING,
}

Operation = Callable[[PrivilegeBackend], Awaitable[Outcome]]


class SystemGateway:

    def __init__(self, backends: Iterable[PrivilegeBackend],
                 order: Optional[Sequence[BackendCapability]] = None):
        self.backends = {backend.capability: backend for backend in backends}
        self.order = tuple(order if order is not None else config.BACKEND_ORDER)

    def backend(self, capability: BackendCapability) -> Optional[PrivilegeBackend]:
        return self.backends.get(capability)

    async def _select(self, skip: Sequence[BackendCapability] = ()) -> Optional[PrivilegeBackend]:
        for capability in self.order:
            if capability in skip:
                continue
            backend = self.backends.get(capability)
            if backend is not None and await backend.is_available():
                return backend
        return None

    async def active_capability(self) -> BackendCapability:
        backend = await self._select()
        return backend.capability if backend is not None else BackendCapability.NONE

    async def _dispatch(self, name: str, operation: Operation) -> GatewayResult:
        """
        Run operation on the first available backend. A backend that turns out
        to be unavailable mid-call hands over to the next one; failures are final.
        """
        tried: List[BackendCapability] = []
        reason = NO_ELEVATION_MESSAGE
        while True:
            backend = await self._select(skip=tried)
            if backend is None:
                logger.warning("%s: %s", name, reason)
                return GatewayResult(ResultStatus.NO_ELEVATION, message=reason)

            try:
                outcome = await operation(backend)
            except VerificationFailed as e:
                logger.warning("%s via %s: %s", name, backend.capability.value, e)
                return GatewayResult(ResultStatus.VERIFICATION_FAILED, backend.capability, str(e))

            if outcome.status == OutcomeStatus.UNAVAILABLE:
                logger.warning("%s: %s became unavailable (%s), trying next backend",
                               name, backend.capability.value, outcome.reason)
                tried.append(backend.capability)
                reason = outcome.reason or reason
                continue

            if not outcome.ok:
                logger.warning("%s via %s failed: %s", name, backend.capability.value, outcome.reason)
            else:
                logger.debug("%s via %s ok", name, backend.capability.value)
            return GatewayResult.from_outcome(outcome)

    async def _root_only(self, name: str, operation: Callable[[RootBackend], Awaitable[Outcome]],
                         message: str) -> GatewayResult:
        root = self.backends.get(BackendCapability.ROOT)
        if root is None or not await root.is_available():
            return GatewayResult(ResultStatus.UNSUPPORTED, await self.active_capability(), message)
        outcome = await operation(root)
        if not outcome.ok:
            logger.warning("%s failed: %s", name, outcome.reason)
        return GatewayResult.from_outcome(outcome)

    # ============= Operations =============

    async def force_stop_app(self, package: str) -> GatewayResult:
        return await self._dispatch("force_stop", lambda b: b.force_stop(package))

    async def clear_cache(self, package: str) -> GatewayResult:
        return await self._dispatch("clear_cache", lambda b: b.clear_cache(package))

    async def set_app_disabled(self, package: str, disabled: bool) -> GatewayResult:
        """Disable (force-stopping first) or enable, then read the state back."""
        async def operation(backend: PrivilegeBackend) -> Outcome:
            if disabled:
                stopped = await backend.force_stop(package)
                if stopped.status == OutcomeStatus.UNAVAILABLE:
                    return stopped
                if not stopped.ok:
                    logger.warning("Force-stop before disabling %s failed: %s", package, stopped.reason)

            outcome = await backend.set_disabled(package, disabled)
            if not outcome.ok:
                return outcome

            actual = await backend.is_app_disabled(package)
            if actual is None:
                raise VerificationFailed(f"Could not read back the enabled state of {package}")
            if actual != disabled:
                raise VerificationFailed(
                    f"{package} is still {'enabled' if disabled else 'disabled'} (protected package?)"
                )
            return outcome

        return await self._dispatch("disable" if disabled else "enable", operation)

    async def uninstall_app(self, package: str) -> GatewayResult:
        return await self._dispatch("uninstall", lambda b: b.uninstall(package))

    async def install_app(self, apk_path: str, can_downgrade: bool = False) -> GatewayResult:
        return await self._dispatch("install", lambda b: b.install(apk_path, can_downgrade))

    async def aggressive_cleanup(self, package: str) -> GatewayResult:
        """Force-stop then clear cache on the same backend."""
        async def operation(backend: PrivilegeBackend) -> Outcome:
            stopped = await backend.force_stop(package)
            if stopped.status == OutcomeStatus.UNAVAILABLE:
                return stopped
            return await backend.clear_cache(package)

        return await self._dispatch("cleanup", operation)

    async def get_app_cache_size(self, package: str) -> int:
        """Advisory byte count; 0 whenever it cannot be determined."""
        backend = await self._select()
        if backend is None:
            return 0
        size = await backend.cache_size(package)
        return size if size > 0 else 0

    async def execute(self, command: str) -> ExecResult:
        backend = await self._select()
        if backend is None:
            return ExecResult(-1, NO_ELEVATION_MESSAGE)
        return await backend.execute(command)

    async def elevation_state(self) -> ElevationState:
        shizuku_state = None
        for capability in self.order:
            backend = self.backends.get(capability)
            if backend is None:
                continue
            if capability == BackendCapability.SHIZUKU:
                shizuku_state = await run_blocking(backend.state)
                if shizuku_state == ShizukuState.READY:
                    return ElevationState.SHIZUKU_RUNNING
            elif await backend.is_available():
                return ElevationState.SU if capability == BackendCapability.ROOT else ElevationState.DHIZUKU
        if shizuku_state is not None:
            return _SHIZUKU_ELEVATION[shizuku_state]
        return ElevationState.NONE

    # ============= Root only =============

    async def reboot_device(self, reason: str = "") -> GatewayResult:
        return await self._root_only("reboot", lambda r: r.reboot(reason), "Reboot requires Root access")

    async def reinstall_app_with_google(self, package: str) -> GatewayResult:
        return await self._root_only("reinstall", lambda r: r.reinstall_with_google(package),
                                     "Root access is required for Google Reinstall")

    async def get_app_paths(self, package: str) -> GatewayResult:
        """On success, output holds one APK path per line."""
        return await self._root_only("app_paths", lambda r: r.get_app_paths(package),
                                     "Root required to fetch split paths reliably")

    async def copy_file_with_root(self, source: str, destination: str) -> GatewayResult:
        return await self._root_only("copy", lambda r: r.copy_file(source, destination),
                                     "Root required for privileged copy")


def load_factory(path: str) -> Any:
    """Import "package.module:attribute" and call it."""
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    return getattr(importlib.import_module(module_name), attr)()


def create_gateway(session: Optional[ShellSession] = None) -> SystemGateway:
    """Root always; Shizuku and Dhizuku when a bridge factory is configured."""
    backends: List[PrivilegeBackend] = [RootBackend(session)]
    if config.SHIZUKU_BRIDGE:
        shizuku = ShizukuBackend(load_factory(config.SHIZUKU_BRIDGE))
        shizuku.register()
        backends.append(shizuku)
    if config.DHIZUKU_BRIDGE:
        backends.append(DhizukuBackend(load_factory(config.DHIZUKU_BRIDGE)))
    return SystemGateway(backends)
