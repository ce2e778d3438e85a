"""Structured outcomes for registration attempts.

Domain-rule denials are returned as data so routers can map each reason to
its own response. Exceptions are kept for lookups and infrastructure.
"""

import enum
from dataclasses import dataclass
from typing import Optional


class DenialReason(str, enum.Enum):
    DUPLICATE_REGISTRATION = "duplicate_registration"
    INVALID_PAYMENT_METHOD = "invalid_payment_method"
    MEMBERSHIP_REQUIRED = "membership_required"
    CATEGORY_FULL = "category_full"
    REGISTRATION_UNAVAILABLE = "registration_unavailable"


DUPLICATE_REGISTRATION_MESSAGE = "User is already registered for this event"
INVALID_PAYMENT_METHOD_MESSAGE = "User does not have a valid payment method"
CATEGORY_FULL_MESSAGE = "This category is full. You can join the waitlist instead."


@dataclass(frozen=True)
class RegistrationCheck:
    can_register: bool
    reason: Optional[DenialReason] = None
    error: Optional[str] = None

    @classmethod
    def allowed(cls) -> "RegistrationCheck":
        return cls(can_register=True)

    @classmethod
    def denied(cls, reason: DenialReason, error: str) -> "RegistrationCheck":
        return cls(can_register=False, reason=reason, error=error)

    def as_dict(self) -> dict:
        return {
            "can_register": self.can_register,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
        }


class RegistrationLookupError(Exception):
    """A user, registration or category referenced by a request does not exist."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class WaitlistError(Exception):
    """A waitlist join or removal was rejected."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AlternateError(Exception):
    """An alternate sign-up, game or selection was rejected."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# Response status per denial, used by routers that turn a denial into an error
DENIAL_STATUS_CODES: dict[DenialReason, int] = {
    DenialReason.DUPLICATE_REGISTRATION: 409,
    DenialReason.CATEGORY_FULL: 409,
    DenialReason.MEMBERSHIP_REQUIRED: 403,
    DenialReason.REGISTRATION_UNAVAILABLE: 403,
    DenialReason.INVALID_PAYMENT_METHOD: 400,
}
