"""
Shared fakes: a scripted root session, binder bridges with fake system
services, gateway-level backends, and installer platform pieces.
"""
import io

import pytest

from privbroker.core.events import EventBus
from privbroker.core.models import AppMetadata, BackendCapability, ExecResult, JobResult, Outcome, ShizukuState


# ============= Root shell =============

class FakeSession:
    """Answers jobs from a prefix -> JobResult table; records every command."""

    def __init__(self, root=True, responses=None):
        self.root = root
        self.responses = dict(responses or {})
        self.commands = []

    async def is_root_available(self):
        return self.root

    def _answer(self, commands):
        for command in commands:
            for prefix, result in self.responses.items():
                if command.startswith(prefix):
                    if isinstance(result, Exception):
                        raise result
                    return result
        return JobResult(0)

    async def run(self, commands):
        commands = [commands] if isinstance(commands, str) else list(commands)
        self.commands.extend(commands)
        return self._answer(commands)

    async def fast_cmd(self, *commands):
        result = await self.run(list(commands))
        return result.stdout[-1] if result.stdout else ""

    async def stream(self, commands):
        result = await self.run(commands)
        for line in result.stdout:
            yield line


# ============= Binder =============

class FakeStub:
    @staticmethod
    def asInterface(binder: "IBinder"):
        return binder


class FakeActivityManager:
    def __init__(self):
        self.calls = []

    def forceStopPackage(self, package: str, user_id: int):
        self.calls.append(("forceStopPackage", package, user_id))


class FakePackageManager:
    def __init__(self):
        self.calls = []
        self.states = {}
        # set to False to make the call a silent no-op (protected package)
        self.honor_state = True

    def setApplicationEnabledSetting(self, package: str, state: int, flags: int, user_id: int, caller: str):
        self.calls.append(("setApplicationEnabledSetting", package, state, flags, user_id, caller))
        if self.honor_state:
            self.states[package] = state

    def getApplicationEnabledSetting(self, package: str, user_id: int) -> int:
        return self.states.get(package, 0)

    def deleteApplicationCacheFiles(self, package: str, observer: "IPackageDataObserver"):
        self.calls.append(("deleteApplicationCacheFiles", package, observer))

    def deleteApplicationCacheFilesAsUser(self, package: str, user_id: int, observer: "IPackageDataObserver"):
        self.calls.append(("deleteApplicationCacheFilesAsUser", package, user_id, observer))


class PerUserOnlyPackageManager(FakePackageManager):
    deleteApplicationCacheFiles = None


class FakeProcess:
    def __init__(self, returncode=0, out=b"", err=b""):
        self.returncode = returncode
        self._out = out
        self._err = err

    def communicate(self):
        return self._out, self._err


class FakeBinderBridge:
    def __init__(self, alive=True, services=None):
        self.alive = alive
        self.services = services if services is not None else {
            "activity": FakeActivityManager(),
            "package": FakePackageManager(),
        }
        self.classes = {
            "android.app.IActivityManager$Stub": FakeStub,
            "android.content.pm.IPackageManager$Stub": FakeStub,
        }
        self.lookups = []
        self.process = FakeProcess()
        self.argv = []

    def ping_binder(self):
        return self.alive

    def get_system_service(self, name):
        self.lookups.append(name)
        return self.services.get(name)

    def wrap_binder(self, binder):
        return binder

    def find_class(self, name):
        try:
            return self.classes[name]
        except KeyError:
            raise LookupError(f"ClassNotFoundException: {name}")

    def new_process(self, argv):
        self.argv.append(list(argv))
        if isinstance(self.process, Exception):
            raise self.process
        return self.process


class FakeShizukuBridge(FakeBinderBridge):
    def __init__(self, installed=True, alive=True, granted=True, **kwargs):
        super().__init__(alive=alive, **kwargs)
        self.installed = installed
        self.granted = granted
        self.requests = []
        self.received_listeners = []
        self.dead_listeners = []
        self.result_listeners = []

    def is_installed(self):
        return self.installed

    def check_self_permission(self):
        return self.granted

    def should_show_rationale(self):
        return False

    def request_permission(self, request_code):
        self.requests.append(request_code)

    def add_binder_received_listener(self, listener):
        self.received_listeners.append(listener)

    def remove_binder_received_listener(self, listener):
        self.received_listeners.remove(listener)

    def add_binder_dead_listener(self, listener):
        self.dead_listeners.append(listener)

    def remove_binder_dead_listener(self, listener):
        self.dead_listeners.remove(listener)

    def add_permission_result_listener(self, listener):
        self.result_listeners.append(listener)

    def remove_permission_result_listener(self, listener):
        self.result_listeners.remove(listener)


class FakeDhizukuBridge(FakeBinderBridge):
    def __init__(self, granted=True, **kwargs):
        super().__init__(**kwargs)
        self.granted = granted

    def is_permission_granted(self):
        return self.granted


# ============= Gateway =============

class FakeBackend:
    """Scripted backend: outcomes per operation, an in-memory disabled flag."""

    def __init__(self, capability, available=True, shizuku_state=None):
        self.capability = capability
        self.available = available
        self.shizuku_state = shizuku_state or (ShizukuState.READY if available else ShizukuState.PERMISSION_NEEDED)
        self.outcomes = {}
        self.calls = []
        self.disabled = {}
        self.honor_disable = True
        self.size = -1
        self.exec_result = ExecResult(0, "ok")

    def state(self):
        return self.shizuku_state

    async def is_available(self):
        return self.available

    def _outcome(self, name, *args):
        self.calls.append((name,) + args)
        return self.outcomes.get(name, Outcome.success(self.capability))

    async def force_stop(self, package):
        return self._outcome("force_stop", package)

    async def set_disabled(self, package, disabled):
        outcome = self._outcome("set_disabled", package, disabled)
        if outcome.ok and self.honor_disable:
            self.disabled[package] = disabled
        return outcome

    async def is_app_disabled(self, package):
        return self.disabled.get(package, False)

    async def clear_cache(self, package):
        return self._outcome("clear_cache", package)

    async def uninstall(self, package):
        return self._outcome("uninstall", package)

    async def install(self, apk_path, can_downgrade=False):
        return self._outcome("install", apk_path, can_downgrade)

    async def reboot(self, reason=""):
        return self._outcome("reboot", reason)

    async def reinstall_with_google(self, package):
        return self._outcome("reinstall_with_google", package)

    async def get_app_paths(self, package):
        return self._outcome("get_app_paths", package)

    async def copy_file(self, source, destination):
        return self._outcome("copy_file", source, destination)

    async def execute(self, command):
        self.calls.append(("execute", command))
        return self.exec_result

    async def cache_size(self, package):
        return self.size


# ============= Install =============

class RecordingBus(EventBus):
    def __init__(self, *args):
        super().__init__(*args)
        self.published = []

    def publish(self, value):
        self.published.append(value)
        super().publish(value)


class FakePendingResult:
    def __init__(self):
        self.finished = 0

    def finish(self):
        self.finished += 1


class _Sink(io.BytesIO):
    def __init__(self, session, name):
        super().__init__()
        self._session = session
        self._name = name

    def close(self):
        if not self.closed:
            self._session.files[self._name] = self.getvalue()
        super().close()


class FakeWritableSession:
    def __init__(self, fail_write=False):
        self.fail_write = fail_write
        self.files = {}
        self.lengths = {}
        self.synced = 0
        self.committed = None
        self.closed = False
        self.abandoned = False

    def open_write(self, name, offset, length):
        if self.fail_write:
            raise IOError("No space left on device")
        self.lengths[name] = length
        return _Sink(self, name)

    def fsync(self, stream):
        self.synced += 1

    def commit(self, status_target):
        self.committed = status_target

    def close(self):
        self.closed = True

    def abandon(self):
        self.abandoned = True


class FakePackageInstaller:
    def __init__(self, session=None, fail_create=False):
        self.session = session if session is not None else FakeWritableSession()
        self.fail_create = fail_create
        self.params = []

    def create_session(self, params):
        if self.fail_create:
            raise RuntimeError("too many sessions")
        self.params.append(params)
        return 42

    def open_session(self, session_id):
        return self.session


class FakeInstallerBridge:
    def __init__(self, metadata=None, installed=None, installer=None):
        self.metadata = metadata
        self.installed = installed
        self.installer = installer if installer is not None else FakePackageInstaller()
        self.targets = []
        self.modes = []

    def parse_package(self, path):
        if self.metadata is None:
            raise ValueError(f"{path} is not a package")
        return self.metadata

    def installed_package(self, package_name):
        return self.installed

    def package_installer(self, mode):
        self.modes.append(mode)
        if isinstance(self.installer, Exception):
            raise self.installer
        return self.installer

    def status_target(self, session_id, receiver):
        self.targets.append((session_id, receiver))
        return ("status-target", session_id)


@pytest.fixture
def app_meta():
    return AppMetadata("com.example.app", label="Example", version_name="2.0", version_code=20)


@pytest.fixture
def root_backend_fake():
    return FakeBackend(BackendCapability.ROOT)
