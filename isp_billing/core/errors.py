"""
Error taxonomy for the billing core.

Each error carries the HTTP status the API layer answers with, so services
never import FastAPI.
"""


class LedgerError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(LedgerError):
    """Entity absent or outside the caller's tenant scope."""

    status_code = 404


class TenantMismatch(LedgerError):
    """A cross-tenant reference was attempted."""

    status_code = 403


class InvalidInput(LedgerError):
    """Malformed amount, date, method or identifier."""

    status_code = 400


class Conflict(LedgerError):
    """Duplicate transaction id or a state that forbids the operation."""

    status_code = 409


class LockTimeout(Conflict):
    """Concurrent-update retries exhausted or caller timeout elapsed."""


class InvariantViolation(LedgerError):
    """Internal: an operation would break a ledger invariant."""

    status_code = 500
