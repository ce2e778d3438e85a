import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from services.registrations_service.models import RegistrationType


class RegistrationCheckResponse(BaseModel):
    can_register: bool
    reason: Optional[str] = None
    error: Optional[str] = None


class MembershipEligibilityResponse(BaseModel):
    eligible: bool
    source: Optional[str] = None  # registration | category | none
    matched_membership_id: Optional[uuid.UUID] = None
    matched_membership_name: Optional[str] = None
    unmet: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class EligibilityRequest(BaseModel):
    category_id: Optional[uuid.UUID] = None


class ValidateRegistrationRequest(BaseModel):
    require_payment_method: bool = False
    # Final price in cents after every discount; omit when not yet known
    effective_price: Optional[int] = Field(default=None, ge=0)


class CategoryResponse(BaseModel):
    id: uuid.UUID
    custom_name: str
    price: int
    accounting_code: Optional[str] = None
    required_membership_id: Optional[uuid.UUID] = None
    max_capacity: Optional[int] = None
    sort_order: int
    occupancy: int
    is_open: bool
    spots_remaining: Optional[int] = None


class RegistrationDetailResponse(BaseModel):
    id: uuid.UUID
    name: str
    type: RegistrationType
    season_id: Optional[uuid.UUID] = None
    required_membership_id: Optional[uuid.UUID] = None
    status: str
    status_text: str
    allow_alternates: bool = False
    # Cents
    alternate_price: Optional[int] = None
    categories: list[CategoryResponse] = Field(default_factory=list)


class WaitlistJoinRequest(BaseModel):
    category_id: uuid.UUID
    discount_code_id: Optional[uuid.UUID] = None


class WaitlistEntryResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    registration_id: uuid.UUID
    category_id: uuid.UUID
    position: int
    discount_code_id: Optional[uuid.UUID] = None
    joined_at: datetime
    removed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AlternateJoinRequest(BaseModel):
    discount_code_id: Optional[uuid.UUID] = None


class AlternateRegistrationResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    registration_id: uuid.UUID
    discount_code_id: Optional[uuid.UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AlternateGameCreateRequest(BaseModel):
    game_description: str = Field(min_length=1, max_length=255)
    game_date: Optional[datetime] = None


class AlternateGameResponse(BaseModel):
    id: uuid.UUID
    registration_id: uuid.UUID
    game_description: str
    game_date: Optional[datetime] = None
    created_by: uuid.UUID
    created_at: datetime
    selected_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class ConsolidatedMembershipResponse(BaseModel):
    membership_id: uuid.UUID
    membership_name: Optional[str] = None
    valid_from: date
    valid_until: date
    purchase_count: int
    status: str
    days_until_expiration: Optional[int] = None


class CategoryCapacityResponse(BaseModel):
    category_id: uuid.UUID
    name: str
    max_capacity: Optional[int] = None
    occupancy: int
    paid_count: int
    percentage_full: Optional[float] = None
    waitlist_count: int
    is_open: bool
    spots_remaining: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class ReleaseClaimsResponse(BaseModel):
    released: int
