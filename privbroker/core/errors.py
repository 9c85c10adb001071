"""
Error taxonomy for the privilege broker.
"""


class BrokerError(Exception):
    """Base class for every error raised inside the broker."""
    pass


class BackendUnavailable(BrokerError):
    """The elevation mechanism cannot be used right now (no root, no binder, no permission)."""
    pass


class InvocationError(BrokerError):
    """A single reflective remote call failed. The backend may still work for other calls."""

    def __init__(self, message: str, interface: str = "", method: str = ""):
        self.interface = interface
        self.method = method
        super().__init__(message)


class ShellIOError(BrokerError, IOError):
    """The privileged shell process failed mid-job. The session restarts on next use."""
    pass


class VerificationFailed(BrokerError):
    """The call reported success but the post-condition check did not hold."""
    pass
