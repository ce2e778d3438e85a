"""Alternate sign-ups and the games alternates are picked for.

Charging a selected alternate lives in the payments service; this module
only keeps the roster and the games.
"""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.logging import get_logger
from services.registrations_service.models import (
    AlternateGame,
    AlternateRegistration,
    AlternateSelection,
    Registration,
    RegistrationPaymentStatus,
    UserRegistration,
)
from services.registrations_service.services.denials import AlternateError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ALTERNATES_NOT_ALLOWED_MESSAGE = "This registration does not allow alternates"


async def _registration_with_alternates(
    db: AsyncSession, registration_id: uuid.UUID
) -> Registration:
    registration = await db.get(Registration, registration_id)
    if registration is None:
        raise AlternateError("Registration not found", status_code=404)
    if not registration.allow_alternates:
        raise AlternateError(ALTERNATES_NOT_ALLOWED_MESSAGE)
    return registration


async def join_alternates(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    registration_id: uuid.UUID,
    discount_code_id: Optional[uuid.UUID] = None,
) -> AlternateRegistration:
    """Put the user on a registration's alternate roster."""
    await _registration_with_alternates(db, registration_id)

    registered = await db.execute(
        select(UserRegistration.id).where(
            UserRegistration.user_id == user_id,
            UserRegistration.registration_id == registration_id,
            UserRegistration.payment_status == RegistrationPaymentStatus.PAID,
        )
    )
    if registered.first() is not None:
        raise AlternateError(
            "You are already registered as a regular participant for this "
            "registration"
        )

    existing = await db.execute(
        select(AlternateRegistration.id).where(
            AlternateRegistration.user_id == user_id,
            AlternateRegistration.registration_id == registration_id,
        )
    )
    if existing.first() is not None:
        raise AlternateError(
            "You are already registered as an alternate for this registration"
        )

    alternate = AlternateRegistration(
        user_id=user_id,
        registration_id=registration_id,
        discount_code_id=discount_code_id,
    )
    db.add(alternate)
    await db.commit()
    logger.info("User %s joined alternates for %s", user_id, registration_id)
    return alternate


async def leave_alternates(
    db: AsyncSession, *, user_id: uuid.UUID, registration_id: uuid.UUID
) -> None:
    result = await db.execute(
        select(AlternateRegistration).where(
            AlternateRegistration.user_id == user_id,
            AlternateRegistration.registration_id == registration_id,
        )
    )
    alternate = result.scalar_one_or_none()
    if alternate is None:
        raise AlternateError("Alternate registration not found", status_code=404)
    await db.delete(alternate)
    await db.commit()


async def list_alternates(
    db: AsyncSession, registration_id: uuid.UUID
) -> list[AlternateRegistration]:
    result = await db.execute(
        select(AlternateRegistration)
        .where(AlternateRegistration.registration_id == registration_id)
        .order_by(AlternateRegistration.created_at.asc())
    )
    return list(result.scalars().all())


async def create_alternate_game(
    db: AsyncSession,
    *,
    registration_id: uuid.UUID,
    game_description: str,
    created_by: uuid.UUID,
    game_date: Optional[datetime] = None,
) -> AlternateGame:
    """Add a game; the registration must have an alternate price and account."""
    registration = await _registration_with_alternates(db, registration_id)
    configured = registration.alternate_price is not None and bool(
        registration.alternate_accounting_code
    )
    if not configured:
        raise AlternateError(
            "Registration must have alternate price and accounting code configured"
        )
    description = (game_description or "").strip()
    if not description:
        raise AlternateError("Game description is required")

    game = AlternateGame(
        registration_id=registration_id,
        game_description=description,
        game_date=game_date,
        created_by=created_by,
    )
    db.add(game)
    await db.commit()
    return game


async def list_alternate_games(
    db: AsyncSession, registration_id: uuid.UUID
) -> list[tuple[AlternateGame, int]]:
    """Games with how many alternates have been selected for each."""
    selected = (
        select(
            AlternateSelection.game_id,
            func.count(AlternateSelection.id).label("selected_count"),
        )
        .group_by(AlternateSelection.game_id)
        .subquery()
    )
    result = await db.execute(
        select(AlternateGame, func.coalesce(selected.c.selected_count, 0))
        .outerjoin(selected, selected.c.game_id == AlternateGame.id)
        .where(AlternateGame.registration_id == registration_id)
        .order_by(AlternateGame.created_at.asc())
    )
    return [(game, int(count)) for game, count in result.all()]
