"""Error taxonomy shared by the sync, reconciliation and approval flows.

Every error carries a stable machine-readable ``code`` and a
``public_message`` suitable for returning to the actor. Validation,
permission and not-found errors expose their own message; remote and
storage failures expose a generic message and keep the detail for logs.
"""

from __future__ import annotations

from typing import Any

GENERIC_FAILURE_MESSAGE = "server error"


class FulfillmentError(Exception):
    """Base class for all domain errors raised by the core."""

    code: str = "error"
    exposes_detail: bool = True

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    @property
    def public_message(self) -> str:
        return self.message if self.exposes_detail else GENERIC_FAILURE_MESSAGE


class ValidationError(FulfillmentError):
    """Input is well-formed but not actionable (e.g. a deal with no assignee)."""

    code = "validation_error"


class NotFoundError(FulfillmentError):
    """A referenced local record does not exist."""

    code = "not_found"


class PermissionDeniedError(FulfillmentError):
    """The actor lacks the department capability an operation requires."""

    code = "access_denied"


class RemoteServiceError(FulfillmentError):
    """A CRM call failed or returned data that does not match the expected shape.

    Attributes:
        method: The remote method that failed (e.g. ``crm.deal.list``).
    """

    code = "remote_error"
    exposes_detail = False

    def __init__(self, method: str, message: str, **context: Any) -> None:
        self.method = method
        super().__init__(f"{method}: {message}", method=method, **context)


class StorageError(FulfillmentError):
    """Local persistence failed."""

    code = "storage_error"
    exposes_detail = False
