"""
BrokerManager: ties gateway, installer and cache scanner together and renders
their results as STATUS / Reason / Action text for the tool layer.
"""
import asyncio
import logging
from typing import Dict, Optional

from . import config
from .cache import CacheScanner, format_size
from .events import EventBus
from .gateway import SystemGateway, create_gateway, load_factory
from .install import (
    Error,
    InstallSession,
    InstallState,
    Installing,
    ReadyToInstall,
    UserConfirmationRequired,
)
from .installer import Installer
from .models import BackendCapability, ElevationState, GatewayResult, InstallMode, ResultStatus

logger = logging.getLogger("privbroker.manager")

ACTIONS: Dict[ResultStatus, str] = {
    ResultStatus.NO_ELEVATION: "Grant root, start Shizuku and allow this app, or activate Dhizuku.",
    ResultStatus.FAILED: "Check the package name and retry.",
    ResultStatus.VERIFICATION_FAILED: "The package is probably protected by the system and cannot be changed.",
    ResultStatus.UNSUPPORTED: "This operation needs root access.",
}

ELEVATION_ACTIONS: Dict[ElevationState, str] = {
    ElevationState.SU: "",
    ElevationState.SHIZUKU_RUNNING: "",
    ElevationState.DHIZUKU: "",
    ElevationState.SHIZUKU_NOT_RUNNING: "Start the Shizuku service (wireless debugging or root).",
    ElevationState.SHIZUKU_NOT_INSTALLED: "Install Shizuku, or grant root access.",
    ElevationState.SHIZUKU_PERMISSION_NEEDED: "Allow this app in Shizuku (a permission request was sent).",
    ElevationState.NONE: "Grant root, start Shizuku and allow this app, or activate Dhizuku.",
}

APP_ACTIONS = ("force_stop", "clear_cache", "disable", "enable", "uninstall", "reinstall", "cleanup", "paths")


def render_result(operation: str, target: str, result: GatewayResult) -> str:
    lines = [f"STATUS: {result.status.name}", f"Operation: {operation}", f"Target: {target}"]
    if result.backend != BackendCapability.NONE:
        lines.append(f"Backend: {result.backend.value}")
    if result.message:
        lines.append(f"Reason: {result.message}")
    action = ACTIONS.get(result.status)
    if action:
        lines.append(f"Action: {action}")
    if result.output:
        lines.append("OUTPUT:")
        lines.append(result.output)
    return "\n".join(lines)


def render_state(state: InstallState) -> str:
    lines = [f"STATUS: {state.name.upper()}"]
    if isinstance(state, ReadyToInstall):
        meta = state.metadata
        lines.append(f"Package: {meta.package_name}")
        if meta.label:
            lines.append(f"Label: {meta.label}")
        lines.append(f"Version: {meta.version_name} ({meta.version_code})")
        if state.is_update:
            lines.append(f"Installed: {state.old_version or 'unknown'}")
        lines.append(f"Update: {state.is_update}")
        lines.append(f"Downgrade: {state.is_downgrade}")
    elif isinstance(state, Installing):
        lines.append(f"Progress: {state.progress:.0%}")
    elif isinstance(state, Error):
        lines.append(f"Reason: {state.message}")
    elif isinstance(state, UserConfirmationRequired):
        lines.append(f"Confirmation: {state.confirmation.action}")
        lines.append("Action: Confirm the installation on the device.")
    return "\n".join(lines)


class BrokerManager:
    """
    One per process. Everything is created lazily so importing the tool layer
    never touches the device.
    """

    def __init__(self, gateway: Optional[SystemGateway] = None, installer: Optional[Installer] = None,
                 scanner: Optional[CacheScanner] = None):
        self._gateway = gateway
        self._installer = installer
        self._scanner = scanner

    @property
    def gateway(self) -> SystemGateway:
        if self._gateway is None:
            self._gateway = create_gateway()
        return self._gateway

    @property
    def installer(self) -> Installer:
        if self._installer is None:
            bridge = load_factory(config.INSTALLER_BRIDGE) if config.INSTALLER_BRIDGE else None
            events = EventBus()
            self._installer = Installer(self.gateway, bridge, events, InstallSession(events))
        return self._installer

    @property
    def scanner(self) -> CacheScanner:
        if self._scanner is None:
            root = self.gateway.backend(BackendCapability.ROOT)
            self._scanner = CacheScanner(getattr(root, "session", None))
        return self._scanner

    async def elevation_status(self) -> str:
        state = await self.gateway.elevation_state()
        if state == ElevationState.SHIZUKU_PERMISSION_NEEDED:
            shizuku = self.gateway.backend(BackendCapability.SHIZUKU)
            if shizuku is not None:
                shizuku.check_and_request_permission()
        active = await self.gateway.active_capability()
        lines = [f"STATUS: {state.name}", f"Active backend: {active.value}",
                 f"Order: {', '.join(c.value for c in self.gateway.order)}"]
        action = ELEVATION_ACTIONS.get(state)
        if action:
            lines.append(f"Action: {action}")
        return "\n".join(lines)

    async def app_action(self, action: str, package: str) -> str:
        action = action.lower()
        if action == "force_stop":
            result = await self.gateway.force_stop_app(package)
        elif action == "clear_cache":
            result = await self.gateway.clear_cache(package)
        elif action in ("disable", "enable"):
            result = await self.gateway.set_app_disabled(package, action == "disable")
        elif action == "uninstall":
            result = await self.gateway.uninstall_app(package)
        elif action == "reinstall":
            result = await self.gateway.reinstall_app_with_google(package)
        elif action == "cleanup":
            result = await self.gateway.aggressive_cleanup(package)
        elif action == "paths":
            result = await self.gateway.get_app_paths(package)
        else:
            return f"STATUS: ERROR\nReason: Unknown action '{action}'. Use: {', '.join(APP_ACTIONS)}"
        return render_result(action, package, result)

    async def reboot(self, reason: str = "") -> str:
        result = await self.gateway.reboot_device(reason)
        return render_result("reboot", reason or "-", result)

    async def cache_size(self, package: Optional[str] = None) -> str:
        if package:
            size = await self.gateway.get_app_cache_size(package)
            return f"STATUS: SUCCESS\nPackage: {package}\nCache: {format_size(size)}"
        total = await self.scanner.total_cache_size()
        if total == "N/A":
            return "STATUS: NO_ELEVATION\nCache: N/A\nAction: Scanning all caches needs root access."
        if total == "Error":
            return "STATUS: ERROR\nCache: Error\nReason: The cache scan failed."
        return f"STATUS: SUCCESS\nCache: {total}"

    async def execute(self, command: str) -> str:
        result = await self.gateway.execute(command)
        status = "SUCCESS" if result.is_success else "COMMAND_FAILED"
        return f"STATUS: {status}\nEXIT_CODE: {result.exit_code}\nOUTPUT:\n{result.output.rstrip()}"

    async def install(self, path: str, mode: Optional[str] = None, confirm: bool = True) -> str:
        installer = self.installer
        installer.session.start()
        # let the session subscribe before anything is published
        await asyncio.sleep(0)
        await installer.refresh_modes()
        if mode:
            try:
                wanted = InstallMode[mode.upper()]
            except KeyError:
                return f"STATUS: ERROR\nReason: Unknown mode '{mode}'. Use: {', '.join(m.value for m in InstallMode)}"
            if not installer.set_mode(wanted):
                return (f"STATUS: ERROR\nReason: Mode '{wanted.value}' is not available.\n"
                        f"Available: {', '.join(m.value for m in installer.modes)}")

        state = await installer.prepare(path)
        if confirm and isinstance(state, ReadyToInstall):
            await installer.confirm()
        await installer.session.settle()
        return f"Mode: {installer.mode.value}\n" + render_state(installer.session.state)

    def install_status(self) -> str:
        if self._installer is None:
            return "STATUS: IDLE\nNo install has been started."
        return render_state(self._installer.session.state)
