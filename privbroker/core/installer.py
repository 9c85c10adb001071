"""
Installer: drives one install from a picked artifact to a terminal state.

Root installs run `pm install` in the root shell. Every other mode writes the
artifact into a package-installer session and lets the OS report the outcome
through InstallStatusReceiver.
"""
import logging
import os
import posixpath
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, List, Optional, Protocol

from .events import EventBus
from .gateway import SystemGateway
from .install import (
    Error,
    Idle,
    InstallSession,
    InstallState,
    InstallStatusReceiver,
    Installing,
    Parsing,
    ReadyToInstall,
    Success,
)
from .models import AppMetadata, BackendCapability, InstallMode
from .workers import run_blocking

logger = logging.getLogger("privbroker.installer")

DOWNGRADE_NOT_SUPPORTED = "Downgrade is only supported with Root, Shizuku or Dhizuku mode."
PARSE_FAILED = "Failed to parse package."

COPY_CHUNK = 65536

MODE_FULL_INSTALL = 1

# Preferred mode first; NORMAL is always possible
MODE_PREFERENCE = (InstallMode.ROOT, InstallMode.SHIZUKU, InstallMode.DHIZUKU)

_MODE_CAPABILITY = {
    InstallMode.ROOT: BackendCapability.ROOT,
    InstallMode.SHIZUKU: BackendCapability.SHIZUKU,
    InstallMode.DHIZUKU: BackendCapability.DHIZUKU,
}


@dataclass
class SessionParams:
    mode: int = MODE_FULL_INSTALL
    request_downgrade: bool = False


class WritableSession(Protocol):
    def open_write(self, name: str, offset: int, length: int) -> BinaryIO: ...

    def fsync(self, stream: BinaryIO) -> None: ...

    def commit(self, status_target: Any) -> None: ...

    def close(self) -> None: ...

    def abandon(self) -> None: ...


class PackageInstaller(Protocol):
    def create_session(self, params: SessionParams) -> int: ...

    def open_session(self, session_id: int) -> WritableSession: ...


class InstallerBridge(Protocol):
    """Platform side of installing: parsing artifacts and opening installer sessions."""

    def parse_package(self, path: str) -> AppMetadata: ...

    def installed_package(self, package_name: str) -> Optional[AppMetadata]: ...

    def package_installer(self, mode: InstallMode) -> PackageInstaller: ...

    def status_target(self, session_id: int, receiver: InstallStatusReceiver) -> Any: ...


class _Progress:
    """Publishes Installing(p) whenever the whole-percent value goes up."""

    def __init__(self, events: EventBus, total: int):
        self.events = events
        self.total = total
        self.done = 0
        self._last_percent = 0

    def advance(self, count: int) -> None:
        self.done += count
        if self.total <= 0:
            return
        percent = int(self.done * 100 / self.total)
        if percent > self._last_percent:
            self._last_percent = percent
            self.events.publish(Installing(min(self.done / self.total, 1.0)))


def _copy(src: BinaryIO, dst: BinaryIO, on_chunk: Optional[Callable[[int], None]] = None) -> None:
    while True:
        chunk = src.read(COPY_CHUNK)
        if not chunk:
            break
        dst.write(chunk)
        if on_chunk is not None:
            on_chunk(len(chunk))


class Installer:

    def __init__(self, gateway: SystemGateway, bridge: Optional[InstallerBridge], events: EventBus,
                 session: Optional[InstallSession] = None, temp_dir: Optional[str] = None):
        self.gateway = gateway
        self.bridge = bridge
        self.events = events
        self.session = session if session is not None else InstallSession(events)
        self.receiver = InstallStatusReceiver(events)
        self.temp_dir = temp_dir
        self.modes: List[InstallMode] = [InstallMode.NORMAL]
        self.mode = InstallMode.NORMAL
        self.current_package: Optional[str] = None
        self._pending_path: Optional[str] = None
        self._is_downgrade = False

    async def refresh_modes(self) -> List[InstallMode]:
        """Re-probe the backends; the default mode follows root > shizuku > dhizuku > normal."""
        modes = [InstallMode.NORMAL]
        for mode in MODE_PREFERENCE:
            backend = self.gateway.backend(_MODE_CAPABILITY[mode])
            if backend is not None and await backend.is_available():
                modes.append(mode)
        self.modes = modes
        self.mode = next((m for m in MODE_PREFERENCE if m in modes), InstallMode.NORMAL)
        return modes

    def set_mode(self, mode: InstallMode) -> bool:
        if mode not in self.modes:
            return False
        self.mode = mode
        return True

    def reset(self) -> None:
        self._pending_path = None
        self._is_downgrade = False
        self.current_package = None
        self.session.reset()

    async def prepare(self, path: str) -> InstallState:
        """Parse the artifact and compare it with what is installed."""
        if not isinstance(self.session.state, Idle):
            self.session.reset()
        self.current_package = None
        self._pending_path = None
        self.events.publish(Parsing())

        try:
            if self.bridge is None:
                raise RuntimeError("No installer bridge configured")
            metadata = await run_blocking(self.bridge.parse_package, path)
            installed = await run_blocking(self.bridge.installed_package, metadata.package_name)
        except Exception as e:
            logger.warning("Cannot parse %s: %s", path, e)
            state: InstallState = Error(PARSE_FAILED)
            self.events.publish(state)
            return state

        self._pending_path = path
        self.current_package = metadata.package_name
        self._is_downgrade = installed is not None and metadata.version_code < installed.version_code
        state = ReadyToInstall(
            metadata=metadata,
            is_update=installed is not None,
            is_downgrade=self._is_downgrade,
            old_version=installed.version_name if installed is not None else None,
        )
        self.events.publish(state)
        return state

    async def confirm(self, mode: Optional[InstallMode] = None) -> None:
        """Install the prepared artifact. NORMAL mode cannot downgrade."""
        if mode is not None:
            self.set_mode(mode)
        path = self._pending_path
        if path is None:
            logger.debug("confirm() without a prepared artifact")
            return
        if self._is_downgrade and self.mode == InstallMode.NORMAL:
            self.events.publish(Error(DOWNGRADE_NOT_SUPPORTED))
            return
        await self.install(path, self.mode, can_downgrade=self._is_downgrade)

    async def install(self, path: str, mode: InstallMode, can_downgrade: bool = False) -> None:
        logger.info("Installing %s in %s mode (downgrade=%s)", path, mode.value, can_downgrade)
        try:
            if mode == InstallMode.ROOT:
                await self._install_with_root(path, can_downgrade)
                return
            if self.bridge is None:
                raise RuntimeError("No installer bridge configured")
            try:
                installer = await run_blocking(self.bridge.package_installer, mode)
            except Exception as e:
                self.events.publish(Error(f"Failed to get {mode.value.title()} installer: {e}"))
                return
            await run_blocking(self._install_with_session, path, installer, can_downgrade)
        except Exception as e:
            logger.exception("Install of %s failed", path)
            self.events.publish(Error(str(e) or "Unknown error during installation"))

    # ============= Root =============

    async def _install_with_root(self, path: str, can_downgrade: bool) -> None:
        self.events.publish(Installing(0.0))
        fd, temp_path = tempfile.mkstemp(prefix="install_temp_", suffix=".apk", dir=self.temp_dir)
        os.close(fd)
        try:
            try:
                await run_blocking(shutil.copyfile, path, temp_path)
            except OSError as e:
                self.events.publish(Error(f"Failed to read input file: {e}"))
                return
            self.events.publish(Installing(0.5))

            root = self.gateway.backend(BackendCapability.ROOT)
            if root is None:
                self.events.publish(Error("Root install failed: no root backend"))
                return
            outcome = await root.install(temp_path, can_downgrade)
            if outcome.ok:
                self.events.publish(Installing(1.0))
                self.events.publish(Success())
            else:
                self.events.publish(Error(outcome.reason or "Root install failed"))
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)

    # ============= Package installer session (runs on the I/O pool) =============

    def _install_with_session(self, path: str, installer: PackageInstaller, can_downgrade: bool) -> None:
        self.events.publish(Parsing())
        params = SessionParams(request_downgrade=can_downgrade)

        try:
            session_id = installer.create_session(params)
        except Exception as e:
            self.events.publish(Error(f"Failed to create session: {e}"))
            return
        try:
            session = installer.open_session(session_id)
        except Exception as e:
            self.events.publish(Error(f"Failed to open session: {e}"))
            return

        try:
            if not self._write_bundle(path, session):
                logger.debug("%s is not a bundle, writing it as base.apk", path)
                self._write_monolithic(path, session)
            self.events.publish(Installing(1.0))
            session.commit(self.bridge.status_target(session_id, self.receiver))
            session.close()
        except Exception as e:
            session.abandon()
            logger.warning("Install session %s abandoned: %s", session_id, e)
            self.events.publish(Error(str(e) or "Unknown installation error"))

    def _write_bundle(self, path: str, session: WritableSession) -> bool:
        """Write every .apk entry of an .apks/.xapk zip. False if path is no such bundle."""
        try:
            archive = zipfile.ZipFile(path)
        except zipfile.BadZipFile:
            return False
        with archive:
            entries = [info for info in archive.infolist() if info.filename.lower().endswith(".apk")]
            if not entries:
                return False
            progress = _Progress(self.events, sum(info.file_size for info in entries))
            for info in entries:
                name = posixpath.basename(info.filename)
                with archive.open(info) as src:
                    out = session.open_write(name, 0, info.file_size)
                    try:
                        _copy(src, out, progress.advance)
                        session.fsync(out)
                    finally:
                        out.close()
        return True

    def _write_monolithic(self, path: str, session: WritableSession) -> None:
        size = os.path.getsize(path)
        progress = _Progress(self.events, size)
        with open(path, "rb") as src:
            out = session.open_write("base.apk", 0, size if size > 0 else -1)
            try:
                _copy(src, out, progress.advance)
                session.fsync(out)
            finally:
                out.close()
