"""Staged accounting records: write-ahead bookkeeping for money movement.

Every charge and refund is written here *before* Stripe is contacted. The
staged invoice (or credit note) then moves through an explicit state machine:

    staged -> pending -> completed
    staged -> completed            (zero-dollar only, no processor involved)
    staged | pending -> failed | ignore

Each transition is an UPDATE guarded by the expected current status. A
writer that loses the race (webhook vs. synchronous response vs. admin retry)
affects zero rows and treats that as success, so confirmations are safe to
replay.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from libs.common.currency import format_cents
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.notifications import Notification, NotificationDispatcher
from services.payments_service.models import (
    AccountingInvoice,
    AccountingLineItem,
    AccountingPayment,
    InvoiceType,
    LineItemType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
    SyncStatus,
)
from services.payments_service.services.pricing import PriceBreakdown
from services.payments_service.stripe_client import ProcessorResult
from services.registrations_service.models import (
    IN_FLIGHT_STATUSES,
    AlternateSelection,
    Membership,
    MembershipPaymentStatus,
    Registration,
    RegistrationPaymentStatus,
    User,
    UserMembership,
    UserRegistration,
)
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key

logger = get_logger(__name__)

_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.STAGED: frozenset(
        {SyncStatus.PENDING, SyncStatus.FAILED, SyncStatus.IGNORE}
    ),
    SyncStatus.PENDING: frozenset(
        {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.IGNORE}
    ),
    SyncStatus.COMPLETED: frozenset(),
    SyncStatus.FAILED: frozenset(),
    SyncStatus.IGNORE: frozenset(),
}


class StagingError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class StagingRecordNotFound(StagingError):
    def __init__(self):
        super().__init__("Staging record not found")


@dataclass(frozen=True)
class StagedLineItem:
    line_item_type: LineItemType
    description: str
    amount: int  # cents, signed
    account_code: Optional[str] = None
    item_id: Optional[uuid.UUID] = None
    quantity: int = 1
    discount_code_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class StagedDiscount:
    discount_code_id: uuid.UUID
    code: str
    amount: int  # cents, positive
    account_code: Optional[str] = None
    category_name: Optional[str] = None


@dataclass(frozen=True)
class ConfirmOutcome:
    applied: bool
    sync_status: SyncStatus
    conflict: bool = False


def transition_allowed(
    current: SyncStatus, target: SyncStatus, *, zero_dollar: bool = False
) -> bool:
    if current == SyncStatus.STAGED and target == SyncStatus.COMPLETED:
        return zero_dollar
    return target in _TRANSITIONS[current]


def _sources_for(target: SyncStatus, *, zero_dollar: bool = False) -> list[SyncStatus]:
    return [
        status
        for status in SyncStatus
        if transition_allowed(status, target, zero_dollar=zero_dollar)
    ]


def _invoice_number(invoice_type: InvoiceType) -> str:
    prefix = "CN" if invoice_type == InvoiceType.CREDIT_NOTE else "INV"
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def _discount_line(discount: StagedDiscount) -> StagedLineItem:
    label = discount.code
    if discount.category_name:
        label = f"{discount.code} ({discount.category_name})"
    return StagedLineItem(
        line_item_type=LineItemType.DISCOUNT,
        description=f"Discount: {label}",
        amount=-discount.amount,
        account_code=discount.account_code,
        discount_code_id=discount.discount_code_id,
    )


def validate_staged_amounts(
    amounts: PriceBreakdown, line_items: Sequence[StagedLineItem]
) -> None:
    if amounts.gross < 0 or amounts.discount < 0:
        raise StagingError("Amounts cannot be negative")
    if amounts.net < 0:
        raise StagingError("Net amount cannot be negative")
    if amounts.gross - amounts.discount != amounts.net:
        raise StagingError(
            f"Net amount {amounts.net} does not equal total {amounts.gross} "
            f"minus discount {amounts.discount}"
        )
    line_total = sum(item.amount * item.quantity for item in line_items)
    if line_total != amounts.net:
        raise StagingError(
            f"Line items sum to {line_total} but net amount is {amounts.net}"
        )


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


async def stage_transaction(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    amounts: PriceBreakdown,
    line_items: Sequence[StagedLineItem],
    discounts: Iterable[StagedDiscount] = (),
    invoice_type: InvoiceType = InvoiceType.INVOICE,
    season_id: Optional[uuid.UUID] = None,
    metadata: Optional[dict] = None,
) -> AccountingInvoice:
    """Write the staged invoice/credit note, its lines and its payment.

    Raises StagingError without side effects if the amounts do not add up or
    the write fails; callers must not contact the processor in that case.
    """
    items = list(line_items) + [_discount_line(d) for d in discounts]
    validate_staged_amounts(amounts, items)

    invoice = AccountingInvoice(
        invoice_number=_invoice_number(invoice_type),
        invoice_type=invoice_type,
        user_id=user_id,
        season_id=season_id,
        total_amount=amounts.gross,
        discount_amount=amounts.discount,
        net_amount=amounts.net,
        sync_status=SyncStatus.STAGED,
        staged_at=utc_now(),
        staging_metadata=dict(metadata or {}),
    )
    try:
        db.add(invoice)
        await db.flush()

        for position, item in enumerate(items):
            db.add(
                AccountingLineItem(
                    invoice_id=invoice.id,
                    line_item_type=item.line_item_type,
                    item_id=item.item_id,
                    description=item.description,
                    quantity=item.quantity,
                    unit_amount=item.amount,
                    line_amount=item.amount * item.quantity,
                    account_code=item.account_code,
                    discount_code_id=item.discount_code_id,
                    sort_order=position,
                )
            )

        if amounts.net > 0:
            sign = -1 if invoice_type == InvoiceType.CREDIT_NOTE else 1
            db.add(
                AccountingPayment(
                    invoice_id=invoice.id,
                    amount_paid=sign * amounts.net,
                    sync_status=SyncStatus.STAGED,
                    staged_at=invoice.staged_at,
                    staging_metadata={"invoice_number": invoice.invoice_number},
                )
            )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Failed to stage transaction",
            extra={
                "extra_fields": {
                    "user_id": str(user_id),
                    "invoice_type": invoice_type.value,
                    "net_amount": amounts.net,
                    "error": str(e),
                }
            },
        )
        raise StagingError("Failed to stage transaction") from e

    logger.info(
        "Staged %s %s",
        invoice_type.value,
        invoice.invoice_number,
        extra={
            "extra_fields": {
                "staging_id": str(invoice.id),
                "user_id": str(user_id),
                "total_amount": amounts.gross,
                "discount_amount": amounts.discount,
                "net_amount": amounts.net,
            }
        },
    )
    return invoice


async def get_staging_record(
    db: AsyncSession, staging_id: uuid.UUID
) -> AccountingInvoice:
    invoice = await db.get(AccountingInvoice, staging_id)
    if invoice is None:
        raise StagingRecordNotFound()
    return invoice


async def get_line_items(
    db: AsyncSession, staging_id: uuid.UUID
) -> list[AccountingLineItem]:
    result = await db.execute(
        select(AccountingLineItem)
        .where(AccountingLineItem.invoice_id == staging_id)
        .order_by(AccountingLineItem.sort_order.asc())
    )
    return list(result.scalars().all())


async def link_transaction(
    db: AsyncSession,
    staging_id: uuid.UUID,
    *,
    payment_id: Optional[uuid.UUID] = None,
    refund_id: Optional[uuid.UUID] = None,
) -> AccountingInvoice:
    if payment_id is None and refund_id is None:
        raise StagingError("A payment or refund id is required")
    invoice = await get_staging_record(db, staging_id)
    if payment_id is not None:
        invoice.payment_id = payment_id
    if refund_id is not None:
        invoice.refund_id = refund_id
    await db.commit()
    return invoice


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def _refresh_loaded(db: AsyncSession, model, ids: Iterable[uuid.UUID]) -> None:
    """Reload session copies of rows a bulk UPDATE just changed."""
    identity_map = db.sync_session.identity_map
    for pk in ids:
        obj = identity_map.get(identity_key(model, pk))
        if obj is not None:
            await db.refresh(obj)


async def _advance(
    db: AsyncSession,
    staging_id: uuid.UUID,
    target: SyncStatus,
    *,
    zero_dollar: bool = False,
    **values,
) -> bool:
    """Conditionally move the invoice and its payments to ``target``.

    Returns False when another writer already moved the record.
    """
    sources = _sources_for(target, zero_dollar=zero_dollar)
    result = await db.execute(
        update(AccountingInvoice)
        .where(
            AccountingInvoice.id == staging_id,
            AccountingInvoice.sync_status.in_(sources),
        )
        .values(sync_status=target, **values)
        .returning(AccountingInvoice.id)
        .execution_options(synchronize_session=False)
    )
    if result.first() is None:
        return False

    payment_values = {"sync_status": target}
    if "synced_at" in values:
        payment_values["synced_at"] = values["synced_at"]
    payments = await db.execute(
        update(AccountingPayment)
        .where(
            AccountingPayment.invoice_id == staging_id,
            AccountingPayment.sync_status.in_(sources),
        )
        .values(**payment_values)
        .returning(AccountingPayment.id)
        .execution_options(synchronize_session=False)
    )
    payment_ids = list(payments.scalars().all())
    await _refresh_loaded(db, AccountingInvoice, [staging_id])
    await _refresh_loaded(db, AccountingPayment, payment_ids)
    return True


async def _set_processor_reference(
    db: AsyncSession, staging_id: uuid.UUID, result: Optional[ProcessorResult]
) -> None:
    if result is None:
        return
    payments = await db.execute(
        update(AccountingPayment)
        .where(AccountingPayment.invoice_id == staging_id)
        .values(reference=result.id)
        .returning(AccountingPayment.id)
        .execution_options(synchronize_session=False)
    )
    await _refresh_loaded(db, AccountingPayment, list(payments.scalars().all()))


def _user_registration_ids(invoice: AccountingInvoice) -> list[uuid.UUID]:
    metadata = invoice.staging_metadata or {}
    return [uuid.UUID(value) for value in metadata.get("user_registration_ids", [])]


def _user_membership_ids(invoice: AccountingInvoice) -> list[uuid.UUID]:
    metadata = invoice.staging_metadata or {}
    return [uuid.UUID(value) for value in metadata.get("user_membership_ids", [])]


def _registration_snapshot(invoice: AccountingInvoice) -> dict[uuid.UUID, str]:
    metadata = invoice.staging_metadata or {}
    return {
        uuid.UUID(key): value
        for key, value in metadata.get("registration_snapshot", {}).items()
    }


async def _load_user_registrations(
    db: AsyncSession, ids: Iterable[uuid.UUID]
) -> list[UserRegistration]:
    ids = list(ids)
    if not ids:
        return []
    result = await db.execute(
        select(UserRegistration).where(UserRegistration.id.in_(ids))
    )
    return list(result.scalars().all())


async def _load_user_memberships(
    db: AsyncSession, ids: Iterable[uuid.UUID]
) -> list[UserMembership]:
    ids = list(ids)
    if not ids:
        return []
    result = await db.execute(select(UserMembership).where(UserMembership.id.in_(ids)))
    return list(result.scalars().all())


async def _refunded_total(db: AsyncSession, payment_id: uuid.UUID) -> int:
    await db.flush()
    return await db.scalar(
        select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.payment_id == payment_id,
            Refund.status == RefundStatus.COMPLETED,
        )
    )


async def purchase_still_held(db: AsyncSession, invoice: AccountingInvoice) -> bool:
    """True while every registration claim and membership the invoice pays
    for is still waiting on its payment."""
    registrations = await _load_user_registrations(
        db, _user_registration_ids(invoice)
    )
    memberships = await _load_user_memberships(db, _user_membership_ids(invoice))
    if any(ur.payment_status not in IN_FLIGHT_STATUSES for ur in registrations):
        return False
    return all(
        um.payment_status == MembershipPaymentStatus.PENDING for um in memberships
    )


async def _finalize_charge(
    db: AsyncSession,
    invoice: AccountingInvoice,
    result: Optional[ProcessorResult],
    now: datetime,
    *,
    registration_status: RegistrationPaymentStatus = RegistrationPaymentStatus.PAID,
) -> None:
    payment = await db.get(Payment, invoice.payment_id)
    if payment is not None:
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = now
        payment.failure_reason = None
        if result is None and invoice.net_amount == 0:
            payment.payment_method = PaymentMethod.FREE
        if result is not None and not payment.stripe_payment_intent_id:
            payment.stripe_payment_intent_id = result.id

    for user_registration in await _load_user_registrations(
        db, _user_registration_ids(invoice)
    ):
        if user_registration.payment_status == RegistrationPaymentStatus.FAILED:
            # Claim was swept before the charge settled; the money is taken,
            # so the registration still stands.
            logger.warning(
                "Confirming payment for a released registration claim",
                extra={
                    "extra_fields": {
                        "staging_id": str(invoice.id),
                        "user_registration_id": str(user_registration.id),
                    }
                },
            )
        user_registration.payment_status = registration_status
        user_registration.processing_expires_at = None
        if registration_status == RegistrationPaymentStatus.PAID:
            user_registration.registered_at = now
            if payment is not None:
                user_registration.payment_id = payment.id

    if registration_status == RegistrationPaymentStatus.PAID:
        for user_membership in await _load_user_memberships(
            db, _user_membership_ids(invoice)
        ):
            user_membership.payment_status = MembershipPaymentStatus.PAID
            user_membership.amount_paid = invoice.net_amount
            user_membership.purchased_at = now
            if payment is not None:
                user_membership.payment_id = payment.id
                user_membership.stripe_payment_intent_id = (
                    payment.stripe_payment_intent_id
                )


async def _finalize_refund(
    db: AsyncSession,
    invoice: AccountingInvoice,
    result: Optional[ProcessorResult],
    now: datetime,
) -> None:
    refund = await db.get(Refund, invoice.refund_id)
    if refund is None:
        return
    refund.status = RefundStatus.COMPLETED
    refund.completed_at = now
    refund.failure_reason = None
    if result is not None and not refund.stripe_refund_id:
        refund.stripe_refund_id = result.id

    for user_registration in await _load_user_registrations(
        db, _registration_snapshot(invoice).keys()
    ):
        user_registration.payment_status = RegistrationPaymentStatus.REFUNDED
        user_registration.refunded_at = user_registration.refunded_at or now

    payment = await db.get(Payment, refund.payment_id)
    if payment is not None:
        if await _refunded_total(db, payment.id) >= payment.final_amount:
            payment.status = PaymentStatus.REFUNDED


async def _finalize(
    db: AsyncSession,
    invoice: AccountingInvoice,
    result: Optional[ProcessorResult],
    now: datetime,
) -> None:
    if invoice.invoice_type == InvoiceType.CREDIT_NOTE:
        await _finalize_refund(db, invoice, result, now)
    else:
        await _finalize_charge(db, invoice, result, now)


def _require_link(invoice: AccountingInvoice) -> None:
    if invoice.invoice_type == InvoiceType.CREDIT_NOTE:
        if invoice.refund_id is None:
            raise StagingError("Staging record is not linked to a refund")
    elif invoice.payment_id is None:
        raise StagingError("Staging record is not linked to a payment")


async def _notify_confirmed(
    db: AsyncSession,
    invoice: AccountingInvoice,
    notifier: Optional[NotificationDispatcher],
) -> None:
    if notifier is None:
        return
    user = await db.get(User, invoice.user_id)
    if user is None:
        return

    if invoice.invoice_type == InvoiceType.CREDIT_NOTE:
        refund = await db.get(Refund, invoice.refund_id)
        payment = await db.get(Payment, refund.payment_id) if refund else None
        template_type = "refund_processed"
        template_data = {
            "user_name": user.full_name,
            "amount": format_cents(refund.amount if refund else invoice.net_amount),
            "original_amount": format_cents(payment.final_amount) if payment else None,
            "reason": refund.reason if refund else None,
            "invoice_number": invoice.invoice_number,
        }
    elif _user_membership_ids(invoice):
        user_memberships = await _load_user_memberships(
            db, _user_membership_ids(invoice)
        )
        user_membership = user_memberships[0] if user_memberships else None
        membership = (
            await db.get(Membership, user_membership.membership_id)
            if user_membership
            else None
        )
        template_type = "membership_confirmation"
        template_data = {
            "user_name": user.full_name,
            "membership_name": membership.name if membership else None,
            "valid_until": (
                user_membership.valid_until.isoformat() if user_membership else None
            ),
            "amount": format_cents(invoice.net_amount),
            "invoice_number": invoice.invoice_number,
        }
    else:
        metadata = invoice.staging_metadata or {}
        registration_name = None
        if metadata.get("registration_id"):
            registration = await db.get(
                Registration, uuid.UUID(metadata["registration_id"])
            )
            registration_name = registration.name if registration else None
        template_type = "registration_confirmation"
        template_data = {
            "user_name": user.full_name,
            "registration_name": registration_name,
            "category_name": metadata.get("category_name"),
            "amount": format_cents(invoice.net_amount),
            "invoice_number": invoice.invoice_number,
        }
        if metadata.get("alternate_game_id"):
            template_type = "alternate_selected"
            del template_data["category_name"]
            template_data["game_description"] = metadata.get("game_description")

    await notifier.dispatch(
        Notification(
            template_type=template_type,
            to_email=user.email,
            template_data=template_data,
            dedupe_key=f"{invoice.id}:confirmed",
        )
    )


async def _recover_duplicate(
    db: AsyncSession,
    staging_id: uuid.UUID,
    result: Optional[ProcessorResult],
    now: datetime,
    target: SyncStatus,
    zero_dollar: bool,
) -> None:
    """Record a settled charge whose registration lost the uniqueness race."""
    invoice = await get_staging_record(db, staging_id)
    await _advance(db, staging_id, target, zero_dollar=zero_dollar, sync_error=None)
    await _set_processor_reference(db, staging_id, result)
    await _finalize_charge(
        db,
        invoice,
        result,
        now,
        registration_status=RegistrationPaymentStatus.FAILED,
    )
    await db.commit()
    logger.error(
        "Payment settled for an already-registered user; refund required",
        extra={
            "extra_fields": {
                "staging_id": str(staging_id),
                "payment_id": str(invoice.payment_id),
                "user_id": str(invoice.user_id),
                "net_amount": invoice.net_amount,
            }
        },
    )


async def _apply(
    db: AsyncSession,
    staging_id: uuid.UUID,
    target: SyncStatus,
    result: Optional[ProcessorResult],
    notifier: Optional[NotificationDispatcher],
    *,
    zero_dollar: bool = False,
) -> ConfirmOutcome:
    invoice = await get_staging_record(db, staging_id)
    _require_link(invoice)
    now = utc_now()

    advanced = await _advance(
        db, staging_id, target, zero_dollar=zero_dollar, sync_error=None
    )
    if not advanced:
        await db.commit()
        await db.refresh(invoice)
        if invoice.sync_status == SyncStatus.FAILED:
            logger.error(
                "Processor confirmed a transaction that was already rolled back",
                extra={
                    "extra_fields": {
                        "staging_id": str(staging_id),
                        "processor_id": result.id if result else None,
                        "net_amount": invoice.net_amount,
                    }
                },
            )
        else:
            logger.info(
                "Staging record %s already %s; confirmation ignored",
                staging_id,
                invoice.sync_status.value,
            )
        return ConfirmOutcome(applied=False, sync_status=invoice.sync_status)

    await _set_processor_reference(db, staging_id, result)
    await _finalize(db, invoice, result, now)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        await _recover_duplicate(db, staging_id, result, now, target, zero_dollar)
        return ConfirmOutcome(applied=True, sync_status=target, conflict=True)

    logger.info(
        "Confirmed %s %s",
        invoice.invoice_type.value,
        invoice.invoice_number,
        extra={
            "extra_fields": {
                "staging_id": str(staging_id),
                "sync_status": target.value,
                "processor_id": result.id if result else None,
                "net_amount": invoice.net_amount,
            }
        },
    )
    await _notify_confirmed(db, invoice, notifier)
    return ConfirmOutcome(applied=True, sync_status=target)


async def confirm_transaction(
    db: AsyncSession,
    staging_id: uuid.UUID,
    result: Optional[ProcessorResult],
    *,
    notifier: Optional[NotificationDispatcher] = None,
) -> ConfirmOutcome:
    """Apply a processor success: staged -> pending plus domain updates.

    Replaying the same confirmation is a no-op (``applied=False``).
    ``conflict=True`` means the charge settled but the user already held a
    paid registration for the event.
    """
    return await _apply(db, staging_id, SyncStatus.PENDING, result, notifier)


async def complete_zero_dollar_transaction(
    db: AsyncSession,
    staging_id: uuid.UUID,
    *,
    notifier: Optional[NotificationDispatcher] = None,
) -> ConfirmOutcome:
    invoice = await get_staging_record(db, staging_id)
    if invoice.net_amount != 0:
        raise StagingError("Only zero-dollar transactions can skip the processor")
    return await _apply(
        db, staging_id, SyncStatus.COMPLETED, None, notifier, zero_dollar=True
    )


async def rollback_transaction(
    db: AsyncSession, staging_id: uuid.UUID, reason: str
) -> bool:
    """Fail the record and undo every domain change made for it.

    Registrations captured in ``registration_snapshot`` return to their
    recorded status; unpaid charge claims, pending memberships and unsettled
    alternate selections are released.
    A failed credit note returns a refunded payment to completed when the
    remaining refunds no longer cover it. Returns False when the record had
    already left staged/pending.
    """
    invoice = await get_staging_record(db, staging_id)
    advanced = await _advance(db, staging_id, SyncStatus.FAILED, sync_error=reason)
    if not advanced:
        await db.commit()
        return False

    if invoice.payment_id is not None and invoice.invoice_type == InvoiceType.INVOICE:
        payment = await db.get(Payment, invoice.payment_id)
        if payment is not None:
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = reason

    if invoice.refund_id is not None:
        refund = await db.get(Refund, invoice.refund_id)
        if refund is not None:
            refund.status = RefundStatus.FAILED
            refund.failure_reason = reason
            payment = await db.get(Payment, refund.payment_id)
            if (
                payment is not None
                and payment.status == PaymentStatus.REFUNDED
                and await _refunded_total(db, payment.id) < payment.final_amount
            ):
                # The refund that made it fully refunded never went through
                payment.status = PaymentStatus.COMPLETED

    snapshot = _registration_snapshot(invoice)
    for user_registration in await _load_user_registrations(db, snapshot.keys()):
        user_registration.payment_status = RegistrationPaymentStatus(
            snapshot[user_registration.id]
        )
        user_registration.refunded_at = None

    for user_registration in await _load_user_registrations(
        db, _user_registration_ids(invoice)
    ):
        if user_registration.payment_status in IN_FLIGHT_STATUSES:
            user_registration.payment_status = RegistrationPaymentStatus.FAILED
            user_registration.processing_expires_at = None

    for user_membership in await _load_user_memberships(
        db, _user_membership_ids(invoice)
    ):
        if user_membership.payment_status == MembershipPaymentStatus.PENDING:
            user_membership.payment_status = MembershipPaymentStatus.FAILED

    if invoice.invoice_type == InvoiceType.INVOICE and invoice.payment_id is not None:
        # An alternate recorded while the charge was still settling
        await db.execute(
            delete(AlternateSelection).where(
                AlternateSelection.payment_id == invoice.payment_id
            )
        )

    await db.commit()
    logger.warning(
        "Rolled back %s %s",
        invoice.invoice_type.value,
        invoice.invoice_number,
        extra={
            "extra_fields": {
                "staging_id": str(staging_id),
                "payment_id": str(invoice.payment_id) if invoice.payment_id else None,
                "refund_id": str(invoice.refund_id) if invoice.refund_id else None,
                "net_amount": invoice.net_amount,
                "reason": reason,
            }
        },
    )
    return True


# ---------------------------------------------------------------------------
# Accounting sync
# ---------------------------------------------------------------------------


async def mark_transaction_synced(
    db: AsyncSession, staging_id: uuid.UUID, *, now: Optional[datetime] = None
) -> bool:
    invoice = await get_staging_record(db, staging_id)
    if invoice.sync_status == SyncStatus.STAGED:
        raise StagingError("Staged records must be confirmed before they are synced")
    advanced = await _advance(
        db, staging_id, SyncStatus.COMPLETED, synced_at=now or utc_now()
    )
    await db.commit()
    return advanced


async def ignore_transaction(
    db: AsyncSession, staging_id: uuid.UUID, reason: Optional[str] = None
) -> bool:
    await get_staging_record(db, staging_id)
    advanced = await _advance(db, staging_id, SyncStatus.IGNORE, sync_error=reason)
    await db.commit()
    if advanced:
        logger.info("Ignoring staging record %s: %s", staging_id, reason)
    return advanced


async def get_pending_staging_records(
    db: AsyncSession,
    *,
    statuses: Sequence[SyncStatus] = (SyncStatus.PENDING,),
    limit: int = 100,
) -> list[AccountingInvoice]:
    """Records awaiting accounting sync, oldest first."""
    result = await db.execute(
        select(AccountingInvoice)
        .where(AccountingInvoice.sync_status.in_(statuses))
        .order_by(AccountingInvoice.staged_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_stale_staged_records(
    db: AsyncSession, *, older_than_minutes: int, now: Optional[datetime] = None
) -> list[AccountingInvoice]:
    cutoff = (now or utc_now()) - timedelta(minutes=older_than_minutes)
    result = await db.execute(
        select(AccountingInvoice)
        .where(
            AccountingInvoice.sync_status == SyncStatus.STAGED,
            AccountingInvoice.staged_at < cutoff,
        )
        .order_by(AccountingInvoice.staged_at.asc())
    )
    return list(result.scalars().all())
