import uuid
from datetime import datetime

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.payments_service.models.enums import (
    InvoiceType,
    LineItemType,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    RefundType,
    SyncStatus,
    enum_values,
)
from sqlalchemy import JSON, Boolean, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _sync_status_column():
    return mapped_column(
        SAEnum(
            SyncStatus,
            name="sync_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=SyncStatus.STAGED,
        index=True,
        nullable=False,
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )

    # Cents
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    final_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(
            PaymentMethod,
            name="payment_method_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PaymentMethod.STRIPE,
        nullable=False,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(
            PaymentStatus,
            name="payment_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    # NULL for free transactions
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(128), unique=True, index=True, nullable=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # "metadata" is reserved by SQLAlchemy's Declarative API, so we map the DB column
    # named "metadata" onto a safe attribute name.
    payment_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<Payment {self.id} {self.status}>"


class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("payments.id"), index=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_type: Mapped[RefundType] = mapped_column(
        SAEnum(
            RefundType,
            name="refund_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=RefundType.PROPORTIONAL,
        nullable=False,
    )
    status: Mapped[RefundStatus] = mapped_column(
        SAEnum(
            RefundStatus,
            name="refund_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=RefundStatus.PENDING,
        nullable=False,
    )
    # NULL for zero-dollar refunds
    stripe_refund_id: Mapped[str | None] = mapped_column(
        String(128), unique=True, index=True, nullable=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<Refund {self.id} {self.amount} {self.status}>"


class DiscountCategory(Base):
    """Groups discount codes under one accounting code and seasonal cap."""

    __tablename__ = "discount_categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    accounting_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Cents; NULL or 0 means no cap
    max_discount_per_user_per_season: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<DiscountCategory {self.name}>"


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    category_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("discount_categories.id"), index=True, nullable=False
    )
    code: Mapped[str] = mapped_column(
        String(50), unique=True, index=True, nullable=False
    )
    percentage: Mapped[int] = mapped_column(Integer, nullable=False)  # 0..100
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    valid_from: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    valid_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<DiscountCode {self.code}>"


class AccountingInvoice(Base):
    """Write-ahead record of an invoice or credit note awaiting sync."""

    __tablename__ = "accounting_invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )
    invoice_type: Mapped[InvoiceType] = mapped_column(
        SAEnum(
            InvoiceType,
            name="invoice_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=InvoiceType.INVOICE,
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), index=True, nullable=False
    )
    season_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, index=True, nullable=True
    )

    # Set once the concrete transaction exists
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payments.id"), index=True, nullable=True
    )
    refund_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("refunds.id"), index=True, nullable=True
    )

    # Cents
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    sync_status: Mapped[SyncStatus] = _sync_status_column()
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    staged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    staging_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<AccountingInvoice {self.invoice_number} {self.sync_status}>"


class AccountingLineItem(Base):
    __tablename__ = "accounting_line_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounting_invoices.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    line_item_type: Mapped[LineItemType] = mapped_column(
        SAEnum(
            LineItemType,
            name="line_item_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # Cents; negative for discounts
    unit_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    line_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    account_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    discount_code_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("discount_codes.id"), index=True, nullable=True
    )
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<AccountingLineItem {self.description} {self.line_amount}>"


class AccountingPayment(Base):
    """Payment (or refund, with a negative amount) against a staged invoice."""

    __tablename__ = "accounting_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounting_invoices.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str] = mapped_column(
        String(32), default="stripe", nullable=False
    )
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    sync_status: Mapped[SyncStatus] = _sync_status_column()
    staged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    staging_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )

    def __repr__(self):
        return f"<AccountingPayment {self.invoice_id} {self.amount_paid}>"
