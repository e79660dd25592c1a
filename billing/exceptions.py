"""
Typed errors raised by the billing ledger.

Every error carries a stable machine-readable ``code`` and a human-readable
message, and maps onto an HTTP status through DRF's ``APIException`` so the
project exception handler can render it without special cases.
"""

from rest_framework import status
from rest_framework.exceptions import APIException


class BillingError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Billing operation failed."
    default_code = "billing_error"
    retryable = False

    def __init__(self, detail=None, code=None, field=None):
        super().__init__(detail=detail, code=code)
        self.code = code or self.default_code
        self.field = field

    @property
    def message(self):
        return str(self.detail)

    def as_errors(self):
        if self.field:
            return {self.field: [self.message]}
        return None


class BillingValidationError(BillingError):
    default_detail = "Invalid billing input."
    default_code = "validation_error"


class BillingNotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Record was not found."
    default_code = "not_found"


class BillingConflict(BillingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The change conflicts with existing records."
    default_code = "conflict"


class ContentionError(BillingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "The record is busy, please retry."
    default_code = "contention"
    retryable = True


class SequenceExhausted(ContentionError):
    default_detail = "Could not issue a unique document number, please retry."
    default_code = "sequence_exhausted"


class LedgerInternalError(BillingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "An unexpected error occurred."
    default_code = "internal_error"
