"""Member-facing registration, eligibility, waitlist and alternate endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_today
from libs.common.logging import get_logger
from libs.common.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from libs.db.session import get_async_db
from services.registrations_service.models import (
    Membership,
    Registration,
    RegistrationCategory,
    UserMembership,
)
from services.registrations_service.schemas import (
    AlternateJoinRequest,
    AlternateRegistrationResponse,
    CategoryResponse,
    ConsolidatedMembershipResponse,
    EligibilityRequest,
    MembershipEligibilityResponse,
    RegistrationCheckResponse,
    RegistrationDetailResponse,
    ValidateRegistrationRequest,
    WaitlistEntryResponse,
    WaitlistJoinRequest,
)
from services.registrations_service.services import (
    alternates,
    capacity,
    eligibility,
    validation,
)
from services.registrations_service.services.denials import (
    AlternateError,
    RegistrationCheck,
    RegistrationLookupError,
    WaitlistError,
)
from services.registrations_service.services.lifecycle import (
    registration_status,
    status_display_text,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/registrations", tags=["registrations"])
settings = get_settings()
logger = get_logger(__name__)


def _check_response(check: RegistrationCheck) -> RegistrationCheckResponse:
    return RegistrationCheckResponse(**check.as_dict())


async def _get_registration_or_404(
    db: AsyncSession, registration_id: uuid.UUID
) -> Registration:
    registration = await db.get(Registration, registration_id)
    if registration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Registration not found"
        )
    return registration


async def _get_category_or_404(
    db: AsyncSession, registration_id: uuid.UUID, category_id: uuid.UUID
) -> RegistrationCategory:
    category = await db.get(RegistrationCategory, category_id)
    if category is None or category.registration_id != registration_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Category not found"
        )
    return category


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------


@router.get("/me/memberships", response_model=list[ConsolidatedMembershipResponse])
async def list_my_memberships(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Active memberships merged into one window per membership type."""
    result = await db.execute(
        select(UserMembership).where(UserMembership.user_id == current_user.uuid)
    )
    rows = list(result.scalars().all())
    today = utc_today()
    consolidated = eligibility.consolidate_user_memberships(rows, today=today)

    names: dict[uuid.UUID, str] = {}
    if consolidated:
        names_result = await db.execute(
            select(Membership.id, Membership.name).where(
                Membership.id.in_([c.membership_id for c in consolidated])
            )
        )
        names = dict(names_result.all())

    response = []
    for entry in consolidated:
        membership_status = eligibility.get_membership_status(
            entry.membership_id,
            rows,
            today=today,
            expiring_soon_days=settings.MEMBERSHIP_EXPIRING_SOON_DAYS,
        )
        response.append(
            ConsolidatedMembershipResponse(
                membership_id=entry.membership_id,
                membership_name=names.get(entry.membership_id),
                valid_from=entry.valid_from,
                valid_until=entry.valid_until,
                purchase_count=len(entry.purchases),
                status=membership_status.status,
                days_until_expiration=membership_status.days_until_expiration,
            )
        )
    return response


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------


@router.get("/{registration_id}", response_model=RegistrationDetailResponse)
async def get_registration(
    registration_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Registration with its lifecycle status and per-category availability."""
    registration = await _get_registration_or_404(db, registration_id)
    result = await db.execute(
        select(RegistrationCategory)
        .where(RegistrationCategory.registration_id == registration_id)
        .order_by(RegistrationCategory.sort_order.asc())
    )
    categories = list(result.scalars().all())
    occupancy = await capacity.get_category_occupancy(db, [c.id for c in categories])

    category_responses = []
    for category in categories:
        availability = capacity.category_availability(
            category.max_capacity, occupancy[category.id]
        )
        category_responses.append(
            CategoryResponse(
                id=category.id,
                custom_name=category.custom_name,
                price=category.price,
                accounting_code=category.accounting_code,
                required_membership_id=category.required_membership_id,
                max_capacity=category.max_capacity,
                sort_order=category.sort_order,
                occupancy=occupancy[category.id],
                is_open=availability.is_open,
                spots_remaining=availability.spots_remaining,
            )
        )

    lifecycle_status = registration_status(registration)
    return RegistrationDetailResponse(
        id=registration.id,
        name=registration.name,
        type=registration.type,
        season_id=registration.season_id,
        required_membership_id=registration.required_membership_id,
        status=lifecycle_status.value,
        status_text=status_display_text(lifecycle_status),
        allow_alternates=registration.allow_alternates,
        alternate_price=registration.alternate_price,
        categories=category_responses,
    )


@router.post(
    "/{registration_id}/eligibility", response_model=MembershipEligibilityResponse
)
async def check_eligibility(
    registration_id: uuid.UUID,
    payload: EligibilityRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Check the caller's memberships against the registration (and category)."""
    registration = await _get_registration_or_404(db, registration_id)
    category_membership_id = None
    if payload.category_id is not None:
        category = await _get_category_or_404(db, registration_id, payload.category_id)
        category_membership_id = category.required_membership_id

    result = await eligibility.check_membership_eligibility_for_user(
        db,
        registration.required_membership_id,
        category_membership_id,
        current_user.uuid,
    )
    return MembershipEligibilityResponse(
        eligible=result.eligible,
        source=result.source,
        matched_membership_id=result.matched_membership_id,
        matched_membership_name=result.matched_membership_name,
        unmet=list(result.unmet),
        error=result.error,
    )


@router.get("/{registration_id}/can-register", response_model=RegistrationCheckResponse)
async def can_register(
    registration_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Duplicate-registration check only."""
    await _get_registration_or_404(db, registration_id)
    check = await validation.can_user_register(db, current_user.uuid, registration_id)
    return _check_response(check)


@router.post("/{registration_id}/validate", response_model=RegistrationCheckResponse)
async def validate_registration(
    registration_id: uuid.UUID,
    payload: ValidateRegistrationRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Duplicate check plus payment method when money is due."""
    await _get_registration_or_404(db, registration_id)
    try:
        check = await validation.validate_registration_eligibility(
            db,
            current_user.uuid,
            registration_id,
            require_payment_method=payload.require_payment_method,
            effective_price=payload.effective_price,
        )
    except RegistrationLookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return _check_response(check)


# ---------------------------------------------------------------------------
# Waitlists
# ---------------------------------------------------------------------------


@router.post(
    "/{registration_id}/waitlist",
    response_model=WaitlistEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def join_waitlist(
    registration_id: uuid.UUID,
    payload: WaitlistJoinRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """Join a full category's waitlist. A saved payment method is required."""
    await _get_registration_or_404(db, registration_id)
    try:
        payment_method = await validation.validate_payment_method(db, current_user.uuid)
    except RegistrationLookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if not payment_method.is_valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You need to set up a payment method before joining the waitlist",
        )

    try:
        entry = await capacity.join_waitlist(
            db,
            user_id=current_user.uuid,
            registration_id=registration_id,
            category_id=payload.category_id,
            discount_code_id=payload.discount_code_id,
            notifier=notifier,
        )
    except RegistrationLookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except WaitlistError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    return entry


@router.delete("/waitlist/{entry_id}", response_model=WaitlistEntryResponse)
async def leave_waitlist(
    entry_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    try:
        return await capacity.remove_from_waitlist(
            db, entry_id, user_id=current_user.uuid
        )
    except WaitlistError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


# ---------------------------------------------------------------------------
# Alternates
# ---------------------------------------------------------------------------


@router.post(
    "/{registration_id}/alternates",
    response_model=AlternateRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def join_alternates(
    registration_id: uuid.UUID,
    payload: AlternateJoinRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Offer to fill in for individual games. A saved payment method is required."""
    try:
        payment_method = await validation.validate_payment_method(db, current_user.uuid)
    except RegistrationLookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if not payment_method.is_valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You need to set up a payment method before registering as an "
            "alternate",
        )

    try:
        return await alternates.join_alternates(
            db,
            user_id=current_user.uuid,
            registration_id=registration_id,
            discount_code_id=payload.discount_code_id,
        )
    except AlternateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete(
    "/{registration_id}/alternates", status_code=status.HTTP_204_NO_CONTENT
)
async def leave_alternates(
    registration_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    try:
        await alternates.leave_alternates(
            db, user_id=current_user.uuid, registration_id=registration_id
        )
    except AlternateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
