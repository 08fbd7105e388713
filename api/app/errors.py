"""Error taxonomy of the signing engine.

Every error carries a stable ``code`` and the HTTP status the API maps it to.
Validation errors (``OutOfTurn``, ``InvalidTransition``, ``InvalidRequest``,
``InvalidFieldValue``) are returned to the caller and never retried.
``AssemblyFailure`` is transient and retried by the assembly policy.
"""
from typing import Optional


class SigningError(Exception):
    code = "signing_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(SigningError):
    code = "not_found"
    status_code = 404


class InvalidRequest(SigningError):
    code = "invalid_request"
    status_code = 400


class InvalidFieldValue(SigningError):
    code = "invalid_field_value"
    status_code = 400


class OutOfTurn(SigningError):
    code = "out_of_turn"
    status_code = 409

    def __init__(self, signer_key: str, current_order: Optional[int] = None):
        super().__init__(
            "It is not your turn to sign yet",
            {"signer_key": signer_key, "current_order_index": current_order},
        )


class InvalidTransition(SigningError):
    code = "invalid_transition"
    status_code = 409


class MissingFieldData(SigningError):
    code = "missing_field_data"
    status_code = 422

    def __init__(self, fields: list):
        self.fields = sorted(fields)
        super().__init__(
            "Required fields have no resolvable value: " + ", ".join(self.fields),
            {"fields": self.fields},
        )


class AssemblyFailure(SigningError):
    code = "assembly_failure"
    status_code = 502


class ReminderNotAllowed(SigningError):
    code = "reminder_not_allowed"
    status_code = 429
