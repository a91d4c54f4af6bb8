"""Error kinds raised by the purchase-order services.

Every error is a ``ValueError`` so callers that only care about "bad input"
can keep catching that. Routers use ``kind`` and ``status_code`` to build the
HTTP response; ``details`` lists every offending field, not just the first.
"""

from __future__ import annotations


class PurchaseOrderError(ValueError):
    kind = 'InternalError'
    status_code = 500

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def as_detail(self) -> dict:
        detail: dict = {'kind': self.kind, 'message': self.message}
        if self.details:
            detail['details'] = self.details
        return detail


class ValidationFailed(PurchaseOrderError):
    kind = 'ValidationFailed'
    status_code = 400


class NotFound(PurchaseOrderError):
    kind = 'NotFound'
    status_code = 404


class InvalidState(PurchaseOrderError):
    kind = 'InvalidState'
    status_code = 400


class InvalidTransition(PurchaseOrderError):
    kind = 'InvalidTransition'
    status_code = 400


class ConflictError(PurchaseOrderError):
    kind = 'ConflictError'
    status_code = 409


class InternalError(PurchaseOrderError):
    kind = 'InternalError'
    status_code = 500
