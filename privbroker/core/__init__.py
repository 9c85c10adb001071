"""
Core module for the privilege broker.
Contains models, configuration, the shell session, binder invoker, backends, gateway and install flow.
"""
from .models import (
    BackendCapability, SessionState, ShizukuState, ElevationState, InstallMode,
    JobResult, ExecResult, Outcome, OutcomeStatus, GatewayResult, ResultStatus, AppMetadata,
)
from .errors import BrokerError, BackendUnavailable, InvocationError, ShellIOError, VerificationFailed
from .shell import ShellSession, default_session
from .binder import BinderInvoker
from .backends import RootBackend, ShizukuBackend, DhizukuBackend
from .gateway import SystemGateway, create_gateway
from .events import EventBus
from .install import InstallSession, InstallStatusReceiver
from .installer import Installer
from .cache import CacheScanner
from .manager import BrokerManager

__all__ = [
    # Models
    "BackendCapability",
    "SessionState",
    "ShizukuState",
    "ElevationState",
    "InstallMode",
    "JobResult",
    "ExecResult",
    "Outcome",
    "OutcomeStatus",
    "GatewayResult",
    "ResultStatus",
    "AppMetadata",
    # Errors
    "BrokerError",
    "BackendUnavailable",
    "InvocationError",
    "ShellIOError",
    "VerificationFailed",
    # Classes
    "ShellSession",
    "default_session",
    "BinderInvoker",
    "RootBackend",
    "ShizukuBackend",
    "DhizukuBackend",
    "SystemGateway",
    "create_gateway",
    "EventBus",
    "InstallSession",
    "InstallStatusReceiver",
    "Installer",
    "CacheScanner",
    "BrokerManager",
]
