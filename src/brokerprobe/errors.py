"""
Exception classes raised by the prober and its connection adapters.
"""
from typing import Optional


class ProberError(Exception):
    """Base class for all prober exceptions."""
    pass


class TransportError(ProberError):
    """Raised by a connection adapter when the underlying transport fails (reset, read/write error)."""

    def __init__(self, message: str, orig_exc: Optional[BaseException] = None):
        self.orig_exc = orig_exc
        if orig_exc:
            message += f" (original error: {type(orig_exc).__name__})"
        super().__init__(message)


class ProtocolError(ProberError):
    """Raised by a connection adapter when the broker refuses the lightweight operation."""

    def __init__(self, message: str, orig_exc: Optional[BaseException] = None):
        self.orig_exc = orig_exc
        if orig_exc:
            message += f" (original error: {type(orig_exc).__name__})"
        super().__init__(message)


class ProbeTimeout(ProberError):
    """Raised when a probe does not complete within its timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Probe did not complete within {timeout}s")


class DuplicateRegistration(ProberError):
    """Raised when a connection id is registered while already being probed."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection '{connection_id}' is already registered")


class UnknownConnection(ProberError):
    """Raised when a handle or connection id does not refer to a registered connection."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection '{connection_id}' is not registered")
