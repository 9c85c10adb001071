"""
BinderInvoker: reach hidden system-service methods through an externally supplied binder bridge.

The bridge hands out raw service binders; the invoker turns them into interface
proxies (`<Interface>$Stub.asInterface`) and calls methods on them by name.
Which lookup is used depends on the target API level.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Tuple

from . import config
from .errors import BackendUnavailable, InvocationError
from .workers import run_blocking

logger = logging.getLogger("privbroker.binder")


class BinderBridge(Protocol):
    """What the invoker needs from Shizuku / Dhizuku style helpers."""

    def ping_binder(self) -> bool: ...

    def get_system_service(self, name: str) -> Any: ...

    def wrap_binder(self, binder: Any) -> Any: ...

    def find_class(self, name: str) -> Any: ...


def _type_name(annotation: Any) -> str:
    if isinstance(annotation, type):
        return annotation.__name__
    return str(annotation)


def find_method(target: Any, name: str, param_types: Optional[Sequence[str]] = None):
    """
    Look a method up on target. With param_types, the annotated parameter
    types must match exactly, like Class.getMethod(name, types...).
    """
    fn = getattr(target, name, None)
    if fn is None or not callable(fn):
        raise AttributeError(f"{getattr(target, '__name__', type(target).__name__)} has no method {name}")
    if param_types is None:
        return fn
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError) as e:
        raise AttributeError(f"Cannot read the signature of {name}") from e
    actual = tuple(_type_name(p.annotation) for p in signature.parameters.values())
    if actual != tuple(param_types):
        raise AttributeError(f"No method {name}{tuple(param_types)} (found {name}{actual})")
    return fn


class ReflectionStrategy:
    """Pre-P: ordinary lookup by exact parameter-type signature."""
    name = "reflection"

    def call(self, target: Any, method: str, param_types: Optional[Sequence[str]], args: Sequence[Any]) -> Any:
        return find_method(target, method, param_types)(*args)


class HiddenApiStrategy:
    """P and later: the bypass path resolves by name and lets the arguments pick the overload."""
    name = "hidden-api"

    def call(self, target: Any, method: str, param_types: Optional[Sequence[str]], args: Sequence[Any]) -> Any:
        return find_method(target, method)(*args)


def strategy_for(api_level: int):
    if api_level >= config.HIDDEN_API_MIN_LEVEL:
        return HiddenApiStrategy()
    return ReflectionStrategy()


@dataclass(frozen=True)
class BinderCall:
    """One entry of the remote-call dispatch table."""
    operation: str
    service: str
    interface: str
    method: str
    param_types: Tuple[str, ...]


ACTIVITY_MANAGER = "android.app.IActivityManager"
PACKAGE_MANAGER = "android.content.pm.IPackageManager"

FORCE_STOP = BinderCall("force_stop", "activity", ACTIVITY_MANAGER, "forceStopPackage", ("str", "int"))
SET_ENABLED = BinderCall(
    "set_enabled", "package", PACKAGE_MANAGER, "setApplicationEnabledSetting",
    ("str", "int", "int", "int", "str"),
)
GET_ENABLED = BinderCall("get_enabled", "package", PACKAGE_MANAGER, "getApplicationEnabledSetting", ("str", "int"))
CLEAR_CACHE = BinderCall(
    "clear_cache", "package", PACKAGE_MANAGER, "deleteApplicationCacheFiles",
    ("str", "IPackageDataObserver"),
)
# Some ROMs only ship the per-user variant
CLEAR_CACHE_AS_USER = BinderCall(
    "clear_cache", "package", PACKAGE_MANAGER, "deleteApplicationCacheFilesAsUser",
    ("str", "int", "IPackageDataObserver"),
)


class BinderInvoker:
    """
    Resolves services and invokes methods on them. Handles are never cached and
    calls are never retried here: each call is a real remote side effect.
    """

    def __init__(self, bridge: BinderBridge, api_level: Optional[int] = None):
        self.bridge = bridge
        self.api_level = config.API_LEVEL if api_level is None else api_level
        self.strategy = strategy_for(self.api_level)

    def get_service(self, name: str) -> Any:
        """Raw binder for a system service, or None if the bridge is not usable."""
        try:
            if not self.bridge.ping_binder():
                return None
            return self.bridge.get_system_service(name)
        except Exception as e:
            logger.debug("Binder bridge unavailable for %s: %s", name, e)
            return None

    def _invoke_sync(self, interface: str, handle: Any, method: str, args: Sequence[Any],
                     param_types: Optional[Sequence[str]]) -> Any:
        try:
            stub = self.bridge.find_class(f"{interface}$Stub")
            proxy = self.strategy.call(stub, "asInterface", ("IBinder",), (self.bridge.wrap_binder(handle),))
            if proxy is None:
                raise LookupError(f"{interface}$Stub.asInterface returned null")
            logger.debug("%s.%s via %s", interface, method, self.strategy.name)
            return self.strategy.call(proxy, method, param_types, args)
        except Exception as e:
            raise InvocationError(f"{interface}.{method} failed: {e}", interface, method) from e

    async def invoke(self, interface: str, handle: Any, method: str, *args: Any,
                     param_types: Optional[Sequence[str]] = None) -> Any:
        """
        Call method on the interface proxy behind handle.

        Raises:
            InvocationError: class, method or the remote call itself failed
        """
        return await run_blocking(self._invoke_sync, interface, handle, method, args, param_types)

    async def call(self, call: BinderCall, *args: Any) -> Any:
        """
        Resolve call.service afresh and invoke the table entry.

        Raises:
            BackendUnavailable: the service could not be reached
            InvocationError: the call itself failed
        """
        def _call():
            handle = self.get_service(call.service)
            if handle is None:
                raise BackendUnavailable(f"System service '{call.service}' is unreachable")
            return self._invoke_sync(call.interface, handle, call.method, args, call.param_types)

        return await run_blocking(_call)
