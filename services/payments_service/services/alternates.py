"""Charging alternates picked for a game.

Each alternate is charged the registration's alternate price, less the
discount code saved when they signed up. The confirmation email is sent
when the staged record is confirmed. One alternate failing does not stop
the others; each gets its own staged record and outcome.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from services.payments_service.models import LineItemType
from services.payments_service.services import charges, staging
from services.payments_service.services.charges import (
    PAYMENT_FAILED_MESSAGE,
    PurchaseOutcome,
    PurchaseStatus,
)
from services.payments_service.stripe_client import StripeClient
from services.registrations_service.models import (
    AlternateGame,
    AlternateRegistration,
    AlternateSelection,
    Registration,
)
from services.registrations_service.services.alternates import (
    ALTERNATES_NOT_ALLOWED_MESSAGE,
)
from services.registrations_service.services.denials import (
    AlternateError,
    DenialReason,
)
from services.registrations_service.services.validation import (
    validate_payment_method,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class AlternateChargeResult:
    user_id: uuid.UUID
    outcome: PurchaseOutcome

    @property
    def selected(self) -> bool:
        return self.outcome.status in (
            PurchaseStatus.COMPLETED,
            PurchaseStatus.PROCESSING,
        )


async def select_alternates(
    db: AsyncSession,
    stripe: StripeClient,
    notifier: Optional[NotificationDispatcher],
    *,
    game_id: uuid.UUID,
    user_ids: Sequence[uuid.UUID],
    selected_by: uuid.UUID,
    now: Optional[datetime] = None,
) -> list[AlternateChargeResult]:
    """Charge and record each alternate not yet selected for the game."""
    now = now or utc_now()
    if not user_ids:
        raise AlternateError("Alternate IDs are required")

    game = await db.get(AlternateGame, game_id)
    if game is None:
        raise AlternateError("Game not found", status_code=404)
    registration = await db.get(Registration, game.registration_id)
    if registration is None or not registration.allow_alternates:
        raise AlternateError(ALTERNATES_NOT_ALLOWED_MESSAGE)

    wanted = list(dict.fromkeys(user_ids))
    roster = await db.execute(
        select(AlternateRegistration).where(
            AlternateRegistration.registration_id == registration.id,
            AlternateRegistration.user_id.in_(wanted),
        )
    )
    alternates = {a.user_id: a for a in roster.scalars().all()}
    if len(alternates) != len(wanted):
        raise AlternateError("Some alternate registrations not found", status_code=404)

    already = await db.execute(
        select(AlternateSelection.user_id).where(
            AlternateSelection.game_id == game.id,
            AlternateSelection.user_id.in_(wanted),
        )
    )
    already_selected = set(already.scalars().all())
    available = [user_id for user_id in wanted if user_id not in already_selected]
    if not available:
        raise AlternateError(
            "All selected alternates are already selected for this game"
        )

    results = []
    for user_id in available:
        outcome = await charge_alternate(
            db,
            stripe,
            notifier,
            game=game,
            registration=registration,
            alternate=alternates[user_id],
            selected_by=selected_by,
            now=now,
        )
        results.append(AlternateChargeResult(user_id=user_id, outcome=outcome))

    logger.info(
        "Processed %d alternate selections for game %s",
        len(results),
        game.id,
        extra={
            "extra_fields": {
                "selected": sum(1 for r in results if r.selected),
                "skipped_already_selected": len(already_selected),
                "selected_by": str(selected_by),
            }
        },
    )
    return results


async def charge_alternate(
    db: AsyncSession,
    stripe: StripeClient,
    notifier: Optional[NotificationDispatcher],
    *,
    game: AlternateGame,
    registration: Registration,
    alternate: AlternateRegistration,
    selected_by: uuid.UUID,
    now: datetime,
) -> PurchaseOutcome:
    user_id = alternate.user_id
    priced = await charges.price_with_saved_discount(
        db,
        user_id=user_id,
        base=registration.alternate_price or 0,
        season_id=registration.season_id,
        discount_code_id=alternate.discount_code_id,
        now=now,
    )
    price, staged_discount, discount_message = priced

    if price.net > 0:
        payment_method = await validate_payment_method(db, user_id)
        if not payment_method.is_valid:
            return PurchaseOutcome(
                status=PurchaseStatus.DENIED,
                price=price,
                reason=DenialReason.INVALID_PAYMENT_METHOD,
                error=payment_method.error,
            )

    description = f"Alternate: {registration.name} - {game.game_description}"
    try:
        invoice = await staging.stage_transaction(
            db,
            user_id=user_id,
            amounts=price,
            line_items=[
                staging.StagedLineItem(
                    line_item_type=LineItemType.REGISTRATION,
                    description=description,
                    amount=price.gross,
                    account_code=registration.alternate_accounting_code,
                    item_id=registration.id,
                )
            ],
            discounts=[staged_discount] if staged_discount else (),
            season_id=registration.season_id,
            metadata={
                "registration_id": str(registration.id),
                "alternate_game_id": str(game.id),
                "game_description": game.game_description,
            },
        )
    except staging.StagingError:
        return PurchaseOutcome(
            status=PurchaseStatus.FAILED, price=price, error=PAYMENT_FAILED_MESSAGE
        )

    payment_id = await charges.record_payment(
        db,
        staging_id=invoice.id,
        user_id=user_id,
        price=price,
        description=description,
        metadata={
            "registration_id": str(registration.id),
            "alternate_game_id": str(game.id),
        },
    )
    outcome = await charges.settle_purchase(
        db,
        stripe,
        notifier,
        staging_id=invoice.id,
        payment_id=payment_id,
        user_id=user_id,
        price=price,
        discount_message=discount_message,
    )
    if outcome.status not in (PurchaseStatus.COMPLETED, PurchaseStatus.PROCESSING):
        return outcome

    db.add(
        AlternateSelection(
            game_id=game.id,
            user_id=user_id,
            discount_code_id=(
                staged_discount.discount_code_id if staged_discount else None
            ),
            payment_id=payment_id,
            amount_charged=price.net,
            selected_by=selected_by,
            selected_at=now,
        )
    )
    await db.commit()
    return outcome
