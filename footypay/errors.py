"""Error taxonomy shared by the stores, the payment adapters and the HTTP layer.

Each error carries a stable code and the HTTP status it maps to, so route
handlers never translate errors one by one.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    VALIDATION = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    NOT_ONBOARDED = "ORGANISER_NOT_ONBOARDED"
    SOLD_OUT = "SOLD_OUT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    INTERNAL = "INTERNAL_ERROR"


class FootyPayError(Exception):
    """Base error with a code and a user-safe message."""

    code: ErrorCode = ErrorCode.INTERNAL
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code.value, "detail": self.message}


class ValidationError(FootyPayError):
    """Bad input shape or values. Never retried automatically."""
    code = ErrorCode.VALIDATION
    status_code = 400


class NotFound(FootyPayError):
    code = ErrorCode.NOT_FOUND
    status_code = 404

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.ident = ident


class OrganiserNotOnboarded(FootyPayError):
    """The game's routing target cannot take charges or payouts yet."""
    code = ErrorCode.NOT_ONBOARDED
    status_code = 409

    def __init__(self, account_id: str,
                 onboarding_url: Optional[str] = None) -> None:
        super().__init__("organiser is not set up to receive payments yet")
        self.account_id = account_id
        self.onboarding_url = onboarding_url

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["onboardingUrl"] = self.onboarding_url
        return d


class SoldOut(FootyPayError):
    code = ErrorCode.SOLD_OUT
    status_code = 409

    def __init__(self, reserved: int, capacity: int) -> None:
        super().__init__(f"game is full ({reserved}/{capacity})")
        self.reserved = reserved
        self.capacity = capacity


class InvalidSignature(FootyPayError):
    code = ErrorCode.INVALID_SIGNATURE
    status_code = 400


class UpstreamUnavailable(FootyPayError):
    """The payment processor or the store failed transiently. Safe to retry."""
    code = ErrorCode.UPSTREAM_UNAVAILABLE
    status_code = 503
