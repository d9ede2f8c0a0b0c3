"""
Error taxonomy for extension reconciliation.

Retriable errors are requeued with exponential backoff, terminal errors stop
automatic retries until an external change re-admits the object, and conflicts
are retried immediately against a fresh read.
"""

from typing import List, Optional


class ExtensionError(Exception):
    """Base class for all errors raised by the extension controllers."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RetriableError(ExtensionError):
    """A transient failure; the operation should be retried with backoff."""


class TerminalError(ExtensionError):
    """
    The operation cannot succeed without an external change.

    Args:
        message: Human-readable description, surfaced in the extension status.
        codes: Optional machine-readable error codes (e.g. 'ERR_INFRA_QUOTA').
    """

    def __init__(self, message: str, codes: Optional[List[str]] = None):
        super().__init__(message)
        self.codes = list(codes or [])


class ConflictError(ExtensionError):
    """A conditional write was rejected because it was based on a stale read."""


class NotFoundError(ExtensionError):
    """The requested object does not exist (anymore)."""


class RegistrationError(ExtensionError):
    """A controller could not be registered against the watch transport."""
