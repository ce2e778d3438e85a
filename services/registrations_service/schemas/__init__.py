"""Registrations Service schemas package."""

from services.registrations_service.schemas.main import (
    AlternateGameCreateRequest,
    AlternateGameResponse,
    AlternateJoinRequest,
    AlternateRegistrationResponse,
    CategoryCapacityResponse,
    CategoryResponse,
    ConsolidatedMembershipResponse,
    EligibilityRequest,
    MembershipEligibilityResponse,
    RegistrationCheckResponse,
    RegistrationDetailResponse,
    ReleaseClaimsResponse,
    ValidateRegistrationRequest,
    WaitlistEntryResponse,
    WaitlistJoinRequest,
)

__all__ = [
    "AlternateGameCreateRequest",
    "AlternateGameResponse",
    "AlternateJoinRequest",
    "AlternateRegistrationResponse",
    "CategoryCapacityResponse",
    "CategoryResponse",
    "ConsolidatedMembershipResponse",
    "EligibilityRequest",
    "MembershipEligibilityResponse",
    "RegistrationCheckResponse",
    "RegistrationDetailResponse",
    "ReleaseClaimsResponse",
    "ValidateRegistrationRequest",
    "WaitlistEntryResponse",
    "WaitlistJoinRequest",
]
