"""Enum definitions for registrations service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class SetupIntentStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    SUCCEEDED = "succeeded"


class MembershipPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class RegistrationType(str, enum.Enum):
    TEAM = "team"
    SCRIMMAGE = "scrimmage"
    EVENT = "event"
    TOURNAMENT = "tournament"


class RegistrationPaymentStatus(str, enum.Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# Rows in these states hold a slot in their category.
OCCUPYING_STATUSES = (
    RegistrationPaymentStatus.PAID,
    RegistrationPaymentStatus.PROCESSING,
    RegistrationPaymentStatus.AWAITING_PAYMENT,
)

# In-flight claims that expire if payment never completes.
IN_FLIGHT_STATUSES = (
    RegistrationPaymentStatus.PROCESSING,
    RegistrationPaymentStatus.AWAITING_PAYMENT,
)
