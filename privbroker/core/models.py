"""
Data models and enums for the privilege broker.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class BackendCapability(Enum):
    NONE = "none"
    ROOT = "root"
    SHIZUKU = "shizuku"
    DHIZUKU = "dhizuku"


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    DEAD = "dead"


class ShizukuState(Enum):
    NOT_INSTALLED = "not_installed"
    NOT_RUNNING = "not_running"
    PERMISSION_NEEDED = "permission_needed"
    READY = "ready"


class ElevationState(Enum):
    """What the UI should show: a usable mechanism or the remediation it needs."""
    SU = "su"
    SHIZUKU_RUNNING = "shizuku_running"
    SHIZUKU_NOT_RUNNING = "shizuku_not_running"
    SHIZUKU_NOT_INSTALLED = "shizuku_not_installed"
    SHIZUKU_PERMISSION_NEEDED = "shizuku_permission_needed"
    DHIZUKU = "dhizuku"
    NONE = "none"


class InstallMode(Enum):
    ROOT = "root"
    SHIZUKU = "shizuku"
    DHIZUKU = "dhizuku"
    NORMAL = "normal"


@dataclass
class JobResult:
    """Normalized result of one shell job."""
    exit_code: int
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ExecResult:
    """Exit code plus combined output of a shell-like command run by a backend."""
    exit_code: int
    output: str = ""

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0


class OutcomeStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Outcome:
    """Tri-state result every backend operation returns instead of raising."""
    status: OutcomeStatus
    backend: BackendCapability
    reason: str = ""
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, backend: BackendCapability, output: str = "") -> "Outcome":
        return cls(OutcomeStatus.SUCCESS, backend, output=output)

    @classmethod
    def failure(cls, backend: BackendCapability, reason: str, output: str = "") -> "Outcome":
        return cls(OutcomeStatus.FAILURE, backend, reason=reason, output=output)

    @classmethod
    def unavailable(cls, backend: BackendCapability, reason: str) -> "Outcome":
        return cls(OutcomeStatus.UNAVAILABLE, backend, reason=reason)


class ResultStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NO_ELEVATION = "no_elevation"
    VERIFICATION_FAILED = "verification_failed"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class GatewayResult:
    """Backend-agnostic result handed to callers of SystemGateway."""
    status: ResultStatus
    backend: BackendCapability = BackendCapability.NONE
    message: str = ""
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    @classmethod
    def from_outcome(cls, outcome: Outcome) -> "GatewayResult":
        if outcome.status == OutcomeStatus.SUCCESS:
            return cls(ResultStatus.SUCCESS, outcome.backend, output=outcome.output)
        if outcome.status == OutcomeStatus.UNAVAILABLE:
            return cls(ResultStatus.NO_ELEVATION, outcome.backend, outcome.reason)
        return cls(ResultStatus.FAILED, outcome.backend, outcome.reason, outcome.output)


@dataclass(frozen=True)
class AppMetadata:
    """What the package parser extracted from an install artifact."""
    package_name: str
    label: str = ""
    version_name: str = ""
    version_code: int = 0
