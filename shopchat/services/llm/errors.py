from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK = "network"
    MALFORMED = "malformed"
    FATAL = "fatal"


class CompletionError(Exception):
    """One failed attempt against one candidate."""

    def __init__(self, kind: ErrorKind, message: str, candidate: Optional[str] = None, status_code: Optional[int] = None):
        self.kind = kind
        self.candidate = candidate
        self.status_code = status_code
        super().__init__(message)


class DispatchError(Exception):
    """Dispatch gave up; the caller should fall back."""

    def __init__(self, message: str, last_error: Optional[CompletionError] = None):
        self.last_error = last_error
        super().__init__(message)


class DispatchAbortedError(DispatchError):
    """A non-recoverable failure stopped the dispatch before other candidates were tried."""


class DispatchExhaustedError(DispatchError):
    """Every candidate failed."""
