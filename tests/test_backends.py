"""
Backend tests: root command lines, the Shizuku handshake and binder calls, Dhizuku execution.
"""
import asyncio

from privbroker.core import config
from privbroker.core.backends import DhizukuBackend, RootBackend, ShizukuBackend, collect_process, install_command
from privbroker.core.errors import ShellIOError
from privbroker.core.models import BackendCapability, JobResult, OutcomeStatus, ShizukuState

from conftest import (
    FakeDhizukuBridge, FakePackageManager, FakeActivityManager, FakeProcess, FakeSession,
    FakeShizukuBridge, PerUserOnlyPackageManager,
)


def run(coro):
    return asyncio.run(coro)


# ============= Root =============

def test_root_force_stop_command():
    session = FakeSession()
    outcome = run(RootBackend(session).force_stop("com.foo"))
    assert outcome.ok
    assert outcome.backend == BackendCapability.ROOT
    assert session.commands == ["am force-stop 'com.foo'"]


def test_root_escapes_hostile_package_names():
    session = FakeSession()
    run(RootBackend(session).uninstall("x'; reboot; '"))
    assert session.commands == ["pm uninstall --user 0 'x'\\''; reboot; '\\'''"]


def test_root_without_grant_is_unavailable():
    session = FakeSession(root=False)
    outcome = run(RootBackend(session).force_stop("com.foo"))
    assert outcome.status == OutcomeStatus.UNAVAILABLE
    assert session.commands == []
    assert not run(RootBackend(session).is_available())


def test_root_command_failure_is_failure_outcome():
    session = FakeSession(responses={"pm disable": JobResult(1, [], ["Error: unknown package"])})
    outcome = run(RootBackend(session).set_disabled("com.foo", True))
    assert outcome.status == OutcomeStatus.FAILURE
    assert "unknown package" in outcome.reason


def test_root_shell_death_is_failure_outcome():
    session = FakeSession(responses={"am force-stop": ShellIOError("Shell process died")})
    outcome = run(RootBackend(session).force_stop("com.foo"))
    assert outcome.status == OutcomeStatus.FAILURE


def test_root_unexpected_error_is_unavailable():
    session = FakeSession(responses={"am force-stop": RuntimeError("boom")})
    outcome = run(RootBackend(session).force_stop("com.foo"))
    assert outcome.status == OutcomeStatus.UNAVAILABLE
    assert "boom" in outcome.reason


def test_root_enable_and_disable_commands():
    session = FakeSession()
    backend = RootBackend(session)
    run(backend.set_disabled("com.foo", True))
    run(backend.set_disabled("com.foo", False))
    assert session.commands == ["pm disable 'com.foo'", "pm enable 'com.foo'"]


def test_root_is_app_disabled():
    session = FakeSession(responses={"pm list packages -d": JobResult(0, ["package:com.foo"])})
    backend = RootBackend(session)
    assert run(backend.is_app_disabled("com.foo")) is True
    assert run(backend.is_app_disabled("com.fo")) is False
    assert run(RootBackend(FakeSession(root=False)).is_app_disabled("com.foo")) is None


def test_root_clear_cache_and_install_commands():
    session = FakeSession()
    backend = RootBackend(session)
    run(backend.clear_cache("com.foo"))
    run(backend.install("/sdcard/app.apk"))
    run(backend.install("/sdcard/app.apk", can_downgrade=True))
    assert session.commands == [
        "rm -rf /data/data/'com.foo'/cache",
        "pm install -r -g '/sdcard/app.apk'",
        "pm install -r -g -d '/sdcard/app.apk'",
    ]


def test_install_command_builder():
    assert install_command("/a b.apk") == "pm install -r -g '/a b.apk'"


def test_root_reboot_commands():
    session = FakeSession()
    backend = RootBackend(session)
    run(backend.reboot())
    run(backend.reboot("recovery"))
    assert session.commands == [
        "svc power reboot || reboot",
        "svc power reboot 'recovery' || reboot 'recovery'",
    ]


def test_root_execute():
    session = FakeSession(responses={
        "ls": JobResult(0, ["a", "b"]),
        "cat": JobResult(1, [], ["No such file"]),
    })
    backend = RootBackend(session)
    assert run(backend.execute("ls /data")).output == "a\nb"
    result = run(backend.execute("cat /nope"))
    assert result.exit_code == 1
    assert result.output == "No such file"
    assert run(RootBackend(FakeSession(root=False)).execute("ls")).exit_code == -1


def test_root_cache_size():
    session = FakeSession(responses={"du -k -s": JobResult(0, ["12\t/data/data/com.foo/cache"])})
    assert run(RootBackend(session).cache_size("com.foo")) == 12 * 1024
    empty = FakeSession(responses={"du -k -s": JobResult(1, [])})
    assert run(RootBackend(empty).cache_size("com.foo")) == -1


def test_root_get_app_paths():
    session = FakeSession(responses={"pm path": JobResult(0, [
        "package:/data/app/com.foo/base.apk",
        "package:/data/app/com.foo/split_config.arm64.apk",
    ])})
    outcome = run(RootBackend(session).get_app_paths("com.foo"))
    assert outcome.ok
    assert outcome.output.splitlines() == [
        "/data/app/com.foo/base.apk",
        "/data/app/com.foo/split_config.arm64.apk",
    ]
    none = run(RootBackend(FakeSession()).get_app_paths("com.foo"))
    assert none.status == OutcomeStatus.FAILURE


def test_root_reinstall_with_google():
    session = FakeSession(responses={
        "pm path": JobResult(0, ["/data/app/base.apk /data/app/split.apk "]),
        "am get-current-user": JobResult(0, ["10"]),
    })
    outcome = run(RootBackend(session).reinstall_with_google("com.foo"))
    assert outcome.ok
    assert session.commands[-1] == (
        "pm install -r -d -i 'com.android.vending' --user '10' --install-reason 0 "
        "'/data/app/base.apk' '/data/app/split.apk'"
    )


def test_root_reinstall_without_paths_fails():
    outcome = run(RootBackend(FakeSession()).reinstall_with_google("com.foo"))
    assert outcome.status == OutcomeStatus.FAILURE
    assert "Could not find APK path" in outcome.reason


def test_root_copy_file():
    session = FakeSession()
    run(RootBackend(session).copy_file("/sdcard/a", "/data/local/tmp/b c"))
    assert session.commands == ["cp '/sdcard/a' '/data/local/tmp/b c'"]


# ============= Shizuku state and handshake =============

def test_shizuku_states():
    assert ShizukuBackend(FakeShizukuBridge(installed=False)).state() == ShizukuState.NOT_INSTALLED
    assert ShizukuBackend(FakeShizukuBridge(alive=False)).state() == ShizukuState.NOT_RUNNING
    assert ShizukuBackend(FakeShizukuBridge(granted=False)).state() == ShizukuState.PERMISSION_NEEDED
    assert ShizukuBackend(FakeShizukuBridge()).state() == ShizukuState.READY


def test_shizuku_state_probe_error_is_not_running():
    class Broken(FakeShizukuBridge):
        def ping_binder(self):
            raise RuntimeError("IllegalStateException: binder haven't been received")

    assert ShizukuBackend(Broken()).state() == ShizukuState.NOT_RUNNING


def test_permission_request_is_deduplicated():
    bridge = FakeShizukuBridge(granted=False)
    backend = ShizukuBackend(bridge)
    assert backend.check_and_request_permission() is False
    assert backend.check_and_request_permission() is False
    assert bridge.requests == [config.SHIZUKU_REQUEST_CODE]
    assert backend.request_pending


def test_permission_result_clears_pending_and_notifies():
    bridge = FakeShizukuBridge(granted=False)
    backend = ShizukuBackend(bridge)
    seen = []
    backend.add_permission_listener(seen.append)
    backend.register()
    backend.check_and_request_permission()

    # a result for someone else's request is ignored
    bridge.result_listeners[0](config.SHIZUKU_REQUEST_CODE + 1, True)
    assert backend.request_pending
    assert seen == []

    bridge.granted = True
    bridge.result_listeners[0](config.SHIZUKU_REQUEST_CODE, True)
    assert not backend.request_pending
    assert seen == [True]
    assert backend.check_and_request_permission() is True


def test_permission_request_failure_allows_retry():
    class Refusing(FakeShizukuBridge):
        def request_permission(self, request_code):
            super().request_permission(request_code)
            raise RuntimeError("no activity")

    bridge = Refusing(granted=False)
    backend = ShizukuBackend(bridge)
    backend.check_and_request_permission()
    backend.check_and_request_permission()
    assert len(bridge.requests) == 2
    assert not backend.request_pending


def test_no_request_when_server_not_running():
    bridge = FakeShizukuBridge(alive=False, granted=False)
    assert ShizukuBackend(bridge).check_and_request_permission() is False
    assert bridge.requests == []


def test_binder_dead_resets_pending_request():
    bridge = FakeShizukuBridge(granted=False)
    backend = ShizukuBackend(bridge)
    backend.register()
    backend.check_and_request_permission()
    bridge.dead_listeners[0]()
    assert not backend.request_pending


def test_binder_received_notifies_when_ready():
    bridge = FakeShizukuBridge()
    backend = ShizukuBackend(bridge)
    seen = []
    backend.add_permission_listener(seen.append)
    backend.register()
    bridge.received_listeners[0]()
    assert seen == [True]
    backend.remove_permission_listener(seen.append)
    bridge.received_listeners[0]()
    assert seen == [True]


def test_register_is_idempotent_and_reversible():
    bridge = FakeShizukuBridge()
    backend = ShizukuBackend(bridge)
    backend.register()
    backend.register()
    assert len(bridge.result_listeners) == 1
    backend.unregister()
    assert bridge.received_listeners == []
    assert bridge.dead_listeners == []
    assert bridge.result_listeners == []


# ============= Shizuku operations =============

def test_shizuku_force_stop_calls_activity_manager():
    bridge = FakeShizukuBridge()
    outcome = run(ShizukuBackend(bridge).force_stop("com.foo"))
    assert outcome.ok
    assert bridge.services["activity"].calls == [("forceStopPackage", "com.foo", config.USER_ID)]


def test_shizuku_set_disabled_uses_disabled_state():
    bridge = FakeShizukuBridge()
    backend = ShizukuBackend(bridge)
    run(backend.set_disabled("com.foo", True))
    pm = bridge.services["package"]
    assert pm.calls[-1] == ("setApplicationEnabledSetting", "com.foo",
                            config.COMPONENT_ENABLED_STATE_DISABLED, 0, config.USER_ID, config.CALLER_PACKAGE)
    assert run(backend.is_app_disabled("com.foo")) is True
    run(backend.set_disabled("com.foo", False))
    assert pm.states["com.foo"] == config.COMPONENT_ENABLED_STATE_ENABLED
    assert run(backend.is_app_disabled("com.foo")) is False


def test_shizuku_operations_need_permission():
    bridge = FakeShizukuBridge(granted=False)
    backend = ShizukuBackend(bridge)
    assert run(backend.force_stop("com.foo")).status == OutcomeStatus.UNAVAILABLE
    assert bridge.services["activity"].calls == []
    assert not run(backend.is_available())
    assert run(backend.execute("id")).exit_code == -1


def test_shizuku_clear_cache_falls_back_to_per_user_call():
    pm = PerUserOnlyPackageManager()
    bridge = FakeShizukuBridge(services={"activity": FakeActivityManager(), "package": pm})
    outcome = run(ShizukuBackend(bridge).clear_cache("com.foo"))
    assert outcome.ok
    assert pm.calls == [("deleteApplicationCacheFilesAsUser", "com.foo", config.USER_ID, None)]


def test_shizuku_remote_failure_is_failure_outcome():
    class Denying(FakePackageManager):
        def setApplicationEnabledSetting(self, package: str, state: int, flags: int, user_id: int, caller: str):
            raise RuntimeError("SecurityException: Shell cannot change component state")

    bridge = FakeShizukuBridge(services={"package": Denying()})
    outcome = run(ShizukuBackend(bridge).set_disabled("com.foo", True))
    assert outcome.status == OutcomeStatus.FAILURE
    assert "SecurityException" in outcome.reason


def test_shizuku_uninstall_runs_pm_through_new_process():
    bridge = FakeShizukuBridge()
    bridge.process = FakeProcess(0, b"Success\n")
    outcome = run(ShizukuBackend(bridge).uninstall("com.foo"))
    assert outcome.ok
    assert bridge.argv == [["sh", "-c", "pm uninstall --user current 'com.foo'"]]


def test_shizuku_install_failure_carries_output():
    bridge = FakeShizukuBridge()
    bridge.process = FakeProcess(1, b"", b"Failure [INSTALL_FAILED_VERSION_DOWNGRADE]")
    outcome = run(ShizukuBackend(bridge).install("/sdcard/app.apk"))
    assert outcome.status == OutcomeStatus.FAILURE
    assert "INSTALL_FAILED_VERSION_DOWNGRADE" in outcome.reason


def test_shizuku_cannot_reboot():
    outcome = run(ShizukuBackend(FakeShizukuBridge()).reboot())
    assert outcome.status == OutcomeStatus.FAILURE
    assert "requires Root" in outcome.reason
    assert run(ShizukuBackend(FakeShizukuBridge()).cache_size("com.foo")) == -1


# ============= Dhizuku =============

def test_dhizuku_availability():
    assert run(DhizukuBackend(FakeDhizukuBridge()).is_available())
    assert not run(DhizukuBackend(FakeDhizukuBridge(granted=False)).is_available())
    assert not run(DhizukuBackend(FakeDhizukuBridge(alive=False)).is_available())


def test_dhizuku_set_disabled_uses_user_disabled_state():
    bridge = FakeDhizukuBridge()
    backend = DhizukuBackend(bridge)
    assert run(backend.set_disabled("com.foo", True)).ok
    assert bridge.services["package"].states["com.foo"] == config.COMPONENT_ENABLED_STATE_DISABLED_USER
    assert run(backend.is_app_disabled("com.foo")) is True


def test_dhizuku_unavailable_without_permission():
    bridge = FakeDhizukuBridge(granted=False)
    outcome = run(DhizukuBackend(bridge).force_stop("com.foo"))
    assert outcome.status == OutcomeStatus.UNAVAILABLE


def test_dhizuku_execute_prefers_stdout():
    bridge = FakeDhizukuBridge()
    bridge.process = FakeProcess(0, b"uid=2000(shell)\n", b"warning")
    result = run(DhizukuBackend(bridge).execute("id"))
    assert result.exit_code == 0
    assert result.output == "uid=2000(shell)\n"


def test_dhizuku_execute_falls_back_to_stderr():
    bridge = FakeDhizukuBridge()
    bridge.process = FakeProcess(127, b"  \n", b"sh: nope: not found")
    result = run(DhizukuBackend(bridge).execute("nope"))
    assert result.exit_code == 127
    assert result.output == "sh: nope: not found"


def test_dhizuku_execute_never_raises():
    bridge = FakeDhizukuBridge()
    bridge.process = RuntimeError("newProcess is not available")
    result = run(DhizukuBackend(bridge).execute("id"))
    assert result.exit_code == -1
    assert "newProcess is not available" in result.output


def test_collect_process_without_exit_code():
    result = collect_process(FakeProcess(None, b"out"))
    assert result.exit_code == -1
    assert result.output == "out"
