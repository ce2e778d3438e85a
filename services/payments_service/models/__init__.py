"""Payments Service models package."""

from services.payments_service.models.core import (
    AccountingInvoice,
    AccountingLineItem,
    AccountingPayment,
    DiscountCategory,
    DiscountCode,
    Payment,
    Refund,
)
from services.payments_service.models.enums import (
    OUTSTANDING_REFUND_STATUSES,
    InvoiceType,
    LineItemType,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    RefundType,
    SyncStatus,
)

__all__ = [
    "AccountingInvoice",
    "AccountingLineItem",
    "AccountingPayment",
    "DiscountCategory",
    "DiscountCode",
    "InvoiceType",
    "LineItemType",
    "OUTSTANDING_REFUND_STATUSES",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "Refund",
    "RefundStatus",
    "RefundType",
    "SyncStatus",
]
