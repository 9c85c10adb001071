"""
Privilege Broker - one contract over root, Shizuku and Dhizuku for privileged Android operations.
"""
from .core.models import BackendCapability, GatewayResult, ResultStatus
from .core.shell import ShellSession
from .core.gateway import SystemGateway, create_gateway
from .core.events import EventBus
from .core.install import InstallSession, InstallStatusReceiver

__all__ = [
    "BackendCapability",
    "GatewayResult",
    "ResultStatus",
    "ShellSession",
    "SystemGateway",
    "create_gateway",
    "EventBus",
    "InstallSession",
    "InstallStatusReceiver",
]
