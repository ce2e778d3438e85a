"""Registrations Service models package."""

from services.registrations_service.models.core import (
    AlternateGame,
    AlternateRegistration,
    AlternateSelection,
    Membership,
    Registration,
    RegistrationCategory,
    Season,
    User,
    UserMembership,
    UserRegistration,
    WaitlistEntry,
)
from services.registrations_service.models.enums import (
    IN_FLIGHT_STATUSES,
    OCCUPYING_STATUSES,
    MembershipPaymentStatus,
    RegistrationPaymentStatus,
    RegistrationType,
    SetupIntentStatus,
)

__all__ = [
    "AlternateGame",
    "AlternateRegistration",
    "AlternateSelection",
    "IN_FLIGHT_STATUSES",
    "Membership",
    "MembershipPaymentStatus",
    "OCCUPYING_STATUSES",
    "Registration",
    "RegistrationCategory",
    "RegistrationPaymentStatus",
    "RegistrationType",
    "Season",
    "SetupIntentStatus",
    "User",
    "UserMembership",
    "UserRegistration",
    "WaitlistEntry",
]
