"""Admin capacity reporting, claim maintenance and alternate games."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.registrations_service.models import Registration, RegistrationCategory
from services.registrations_service.schemas import (
    AlternateGameCreateRequest,
    AlternateGameResponse,
    AlternateRegistrationResponse,
    CategoryCapacityResponse,
    ReleaseClaimsResponse,
    WaitlistEntryResponse,
)
from services.registrations_service.services import alternates, capacity
from services.registrations_service.services.denials import AlternateError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/registrations", tags=["admin-registrations"])


@router.get(
    "/{registration_id}/capacity", response_model=list[CategoryCapacityResponse]
)
async def get_capacity_report(
    registration_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    if await db.get(Registration, registration_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Registration not found"
        )
    return await capacity.category_capacity_report(db, registration_id)


@router.get(
    "/{registration_id}/categories/{category_id}/waitlist",
    response_model=list[WaitlistEntryResponse],
)
async def get_category_waitlist(
    registration_id: uuid.UUID,
    category_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    category = await db.get(RegistrationCategory, category_id)
    if category is None or category.registration_id != registration_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Category not found"
        )
    return await capacity.get_waitlist(db, registration_id, category_id)


@router.post("/claims/release", response_model=ReleaseClaimsResponse)
async def release_claims(
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Run the abandoned-claim sweep now instead of waiting for the worker."""
    released = await capacity.release_abandoned_claims(db)
    return ReleaseClaimsResponse(released=released)


@router.get(
    "/{registration_id}/alternates",
    response_model=list[AlternateRegistrationResponse],
)
async def get_alternates(
    registration_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    if await db.get(Registration, registration_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Registration not found"
        )
    return await alternates.list_alternates(db, registration_id)


@router.post(
    "/{registration_id}/alternate-games",
    response_model=AlternateGameResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_alternate_game(
    registration_id: uuid.UUID,
    payload: AlternateGameCreateRequest,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    try:
        return await alternates.create_alternate_game(
            db,
            registration_id=registration_id,
            game_description=payload.game_description,
            game_date=payload.game_date,
            created_by=admin.uuid,
        )
    except AlternateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/{registration_id}/alternate-games",
    response_model=list[AlternateGameResponse],
)
async def get_alternate_games(
    registration_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    games = await alternates.list_alternate_games(db, registration_id)
    return [
        AlternateGameResponse.model_validate(game).model_copy(
            update={"selected_count": selected_count}
        )
        for game, selected_count in games
    ]
