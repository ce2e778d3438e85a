"""Enum definitions for payments service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    FREE = "free"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Refunds in these states count against the refundable balance.
OUTSTANDING_REFUND_STATUSES = (
    RefundStatus.PENDING,
    RefundStatus.PROCESSING,
    RefundStatus.COMPLETED,
)


class RefundType(str, enum.Enum):
    PROPORTIONAL = "proportional"
    DISCOUNT_CODE = "discount_code"


class SyncStatus(str, enum.Enum):
    STAGED = "staged"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORE = "ignore"


class InvoiceType(str, enum.Enum):
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"


class LineItemType(str, enum.Enum):
    MEMBERSHIP = "membership"
    REGISTRATION = "registration"
    DONATION = "donation"
    DISCOUNT = "discount"
    REFUND = "refund"
