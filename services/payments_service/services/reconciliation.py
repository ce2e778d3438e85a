"""Settle staged records from Stripe's side.

Three entry points reach the same confirm/rollback transitions:
- Stripe webhooks (``handle_stripe_event``)
- an admin asking to verify one record (``verify_transaction``)
- the payments worker sweeping records left in ``staged`` too long

All of them are safe to repeat; the staging transitions are conditional.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Optional

from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from services.payments_service.models import (
    AccountingInvoice,
    InvoiceType,
    Payment,
    Refund,
    SyncStatus,
)
from services.payments_service.services import charges, refunds, staging
from services.payments_service.stripe_client import (
    CHARGE_SUCCEEDED,
    REFUND_SUCCEEDED,
    ProcessorResult,
    StripeClient,
    StripeError,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

_FAILED_REFUND_STATUSES = ("failed", "canceled")
_FAILED_CHARGE_STATUSES = ("canceled", "requires_payment_method")


class VerifyAction(str, enum.Enum):
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class VerifyOutcome:
    staging_id: uuid.UUID
    action: VerifyAction
    sync_status: SyncStatus
    detail: Optional[str] = None


async def _outcome(
    db: AsyncSession,
    staging_id: uuid.UUID,
    action: VerifyAction,
    detail: Optional[str] = None,
) -> VerifyOutcome:
    invoice = await staging.get_staging_record(db, staging_id)
    return VerifyOutcome(
        staging_id=staging_id,
        action=action,
        sync_status=invoice.sync_status,
        detail=detail,
    )


async def _settle(
    db: AsyncSession,
    staging_id: uuid.UUID,
    result: ProcessorResult,
    succeeded: bool,
    failed: bool,
    notifier: Optional[NotificationDispatcher],
) -> VerifyOutcome:
    if succeeded:
        confirmed = await staging.confirm_transaction(
            db, staging_id, result, notifier=notifier
        )
        action = VerifyAction.CONFIRMED if confirmed.applied else VerifyAction.UNCHANGED
        return await _outcome(db, staging_id, action)
    if failed:
        rolled_back = await staging.rollback_transaction(
            db, staging_id, f"Stripe reported status {result.status}"
        )
        action = VerifyAction.ROLLED_BACK if rolled_back else VerifyAction.UNCHANGED
        return await _outcome(db, staging_id, action)
    return await _outcome(
        db, staging_id, VerifyAction.UNCHANGED, f"Stripe status {result.status}"
    )


async def verify_transaction(
    db: AsyncSession,
    stripe: StripeClient,
    staging_id: uuid.UUID,
    *,
    notifier: Optional[NotificationDispatcher] = None,
) -> VerifyOutcome:
    """Ask Stripe what happened to a staged record and apply the answer.

    A record whose charge or refund never got a Stripe id is resubmitted
    under its original idempotency key.
    """
    invoice = await staging.get_staging_record(db, staging_id)
    if invoice.sync_status != SyncStatus.STAGED:
        return await _outcome(db, staging_id, VerifyAction.UNCHANGED)

    linked = (
        invoice.refund_id is not None
        if invoice.invoice_type == InvoiceType.CREDIT_NOTE
        else invoice.payment_id is not None
    )
    if not linked:
        await staging.rollback_transaction(
            db, staging_id, "Abandoned before a payment or refund was recorded"
        )
        return await _outcome(db, staging_id, VerifyAction.ROLLED_BACK)

    if invoice.net_amount == 0:
        await staging.complete_zero_dollar_transaction(
            db, staging_id, notifier=notifier
        )
        return await _outcome(db, staging_id, VerifyAction.COMPLETED)

    try:
        if invoice.invoice_type == InvoiceType.CREDIT_NOTE:
            refund = await db.get(Refund, invoice.refund_id)
            if refund.stripe_refund_id:
                result = await stripe.retrieve_refund(refund.stripe_refund_id)
            else:
                result = await _resubmit_refund(db, stripe, invoice, refund)
                if result is None:
                    return await _outcome(db, staging_id, VerifyAction.ROLLED_BACK)
            return await _settle(
                db,
                staging_id,
                result,
                succeeded=result.status == REFUND_SUCCEEDED,
                failed=result.status in _FAILED_REFUND_STATUSES,
                notifier=notifier,
            )

        payment = await db.get(Payment, invoice.payment_id)
        if payment.stripe_payment_intent_id:
            result = await stripe.retrieve_payment_intent(
                payment.stripe_payment_intent_id
            )
        else:
            result = await _resubmit_charge(db, stripe, invoice, payment)
            if result is None:
                return await _outcome(db, staging_id, VerifyAction.ROLLED_BACK)
        return await _settle(
            db,
            staging_id,
            result,
            succeeded=result.status == CHARGE_SUCCEEDED,
            failed=result.status in _FAILED_CHARGE_STATUSES,
            notifier=notifier,
        )
    except StripeError as e:
        logger.error(
            "Could not verify staging record %s with Stripe",
            staging_id,
            extra={"extra_fields": {"error": e.message, "status": e.status_code}},
        )
        return await _outcome(
            db, staging_id, VerifyAction.UNCHANGED, "Stripe lookup failed"
        )


async def _resubmit_charge(
    db: AsyncSession,
    stripe: StripeClient,
    invoice: AccountingInvoice,
    payment: Payment,
) -> Optional[ProcessorResult]:
    """Replay the charge under its original idempotency key.

    Stripe returns the first attempt's intent if one was created, and
    charges now if none was. Returns None after rolling back when the claim
    it would pay for is gone or Stripe rejects the charge.
    """
    if not await staging.purchase_still_held(db, invoice):
        await staging.rollback_transaction(
            db, invoice.id, "No Stripe charge was created"
        )
        return None
    try:
        result = await charges.submit_charge(db, stripe, payment)
    except StripeError as e:
        if e.outcome_unknown:
            raise
        await staging.rollback_transaction(
            db, invoice.id, f"Stripe charge failed: {e.message}"
        )
        return None
    payment.stripe_payment_intent_id = result.id
    await db.commit()
    logger.info(
        "Resubmitted charge for staging record %s: %s",
        invoice.id,
        result.status,
        extra={"extra_fields": {"payment_intent_id": result.id}},
    )
    return result


async def _resubmit_refund(
    db: AsyncSession,
    stripe: StripeClient,
    invoice: AccountingInvoice,
    refund: Refund,
) -> Optional[ProcessorResult]:
    payment = await db.get(Payment, refund.payment_id)
    if payment is None or not payment.stripe_payment_intent_id:
        await staging.rollback_transaction(
            db, invoice.id, "No Stripe refund was created"
        )
        return None
    try:
        result = await refunds.submit_refund(
            stripe, refund, payment.stripe_payment_intent_id, invoice.id
        )
    except StripeError as e:
        if e.outcome_unknown:
            raise
        await staging.rollback_transaction(
            db, invoice.id, f"Stripe refund failed: {e.message}"
        )
        return None
    refund.stripe_refund_id = result.id
    await db.commit()
    logger.info(
        "Resubmitted refund for staging record %s: %s",
        invoice.id,
        result.status,
        extra={"extra_fields": {"refund_id": result.id}},
    )
    return result


async def reconcile_stale_staged_records(
    db: AsyncSession,
    stripe: StripeClient,
    *,
    older_than_minutes: int,
    notifier: Optional[NotificationDispatcher] = None,
) -> int:
    """Verify every record stuck in ``staged``; returns how many moved."""
    records = await staging.get_stale_staged_records(
        db, older_than_minutes=older_than_minutes
    )
    resolved = 0
    for invoice in records:
        outcome = await verify_transaction(db, stripe, invoice.id, notifier=notifier)
        if outcome.action != VerifyAction.UNCHANGED:
            resolved += 1
    if records:
        logger.info(
            "Reconciled %d of %d stale staged records", resolved, len(records)
        )
    return resolved


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def _staging_id_from(obj: dict) -> Optional[uuid.UUID]:
    value = (obj.get("metadata") or {}).get("staging_id")
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.warning("Ignoring webhook with malformed staging_id %r", value)
        return None


async def handle_stripe_event(
    db: AsyncSession,
    event: dict,
    *,
    notifier: Optional[NotificationDispatcher] = None,
) -> str:
    """Apply one Stripe event. Returns a short description of what happened."""
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    staging_id = _staging_id_from(obj)
    if staging_id is None:
        return "ignored"

    result = ProcessorResult(
        id=obj.get("id", ""),
        status=obj.get("status", ""),
        amount=int(obj.get("amount") or 0),
        raw=obj,
    )

    try:
        if event_type == "payment_intent.succeeded":
            confirmed = await staging.confirm_transaction(
                db, staging_id, result, notifier=notifier
            )
            return "confirmed" if confirmed.applied else "duplicate"

        if event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            reason = error.get("message") or "Payment failed"
            rolled_back = await staging.rollback_transaction(db, staging_id, reason)
            return "rolled_back" if rolled_back else "duplicate"

        if event_type in ("refund.created", "refund.updated", "charge.refund.updated"):
            if result.status == REFUND_SUCCEEDED:
                confirmed = await staging.confirm_transaction(
                    db, staging_id, result, notifier=notifier
                )
                return "confirmed" if confirmed.applied else "duplicate"
            if result.status in _FAILED_REFUND_STATUSES:
                reason = obj.get("failure_reason") or f"Refund {result.status}"
                rolled_back = await staging.rollback_transaction(
                    db, staging_id, reason
                )
                return "rolled_back" if rolled_back else "duplicate"
            return "pending"
    except staging.StagingError as e:
        logger.warning(
            "Webhook %s for staging record %s not applied: %s",
            event_type,
            staging_id,
            e.message,
        )
        return "ignored"

    return "ignored"
