# trustwork/errors.py
"""Domain errors raised by the engine.

Every failure carries a stable ``kind`` (one of the error kinds below) and a
``code`` so that clients can render their own policy text. The errors
blueprint turns these into JSON responses.
"""
from __future__ import annotations
from typing import Any, Optional


class TrustworkError(Exception):
    kind = "INTERNAL"
    code = "INTERNAL"
    http_status = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None,
                 details: Optional[dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthenticationError(TrustworkError):
    kind = code = "AUTHN"
    http_status = 401


class AuthorizationError(TrustworkError):
    kind = code = "AUTHZ"
    http_status = 403


class ValidationError(TrustworkError):
    kind = code = "VALIDATION"
    http_status = 422

    @classmethod
    def field(cls, name: str, sub_code: str, message: str) -> "ValidationError":
        return cls(message, details={"fields": {name: sub_code}})


class NotFoundError(TrustworkError):
    kind = code = "NOT_FOUND"
    http_status = 404


class InvalidTransition(TrustworkError):
    kind = code = "INVALID_TRANSITION"
    http_status = 409

    @classmethod
    def between(cls, entity: str, current: str, target: str) -> "InvalidTransition":
        return cls(
            f"{entity} cannot move from {current} to {target}",
            details={"entity": entity, "from": current, "to": target},
        )


class ConflictError(TrustworkError):
    kind = code = "CONFLICT"
    http_status = 409


class AssignmentAlreadyAwarded(ConflictError):
    code = "ASSIGNMENT_ALREADY_AWARDED"


class QuotaError(TrustworkError):
    kind = code = "QUOTA"
    http_status = 429


class AttemptInProgress(QuotaError):
    code = "ATTEMPT_IN_PROGRESS"


class CooldownActive(QuotaError):
    code = "COOLDOWN_ACTIVE"


class GatewayError(TrustworkError):
    kind = "GATEWAY"

    def __init__(self, message: str = "", *, retryable: bool, correlation_id: Optional[str] = None,
                 details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        if correlation_id:
            details["correlation_id"] = correlation_id
        super().__init__(message, code="RETRYABLE" if retryable else "PERMANENT", details=details)
        self.retryable = retryable
        self.correlation_id = correlation_id
        self.http_status = 503 if retryable else 502


class SignatureError(TrustworkError):
    kind = code = "INTEGRITY"
    http_status = 400
