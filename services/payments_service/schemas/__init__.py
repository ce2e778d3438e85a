"""Payments Service schemas package."""

from services.payments_service.schemas.main import (
    AlternateChargeResponse,
    AlternateSelectRequest,
    AlternateSelectResponse,
    DiscountRefundInfoResponse,
    IgnoreRequest,
    PriceBreakdownResponse,
    PurchaseMembershipRequest,
    PurchaseRegistrationRequest,
    PurchaseResponse,
    RefundLineItemResponse,
    RefundPreviewResponse,
    RefundRequest,
    RefundResponse,
    StagingRecordResponse,
    TransitionResponse,
    VerifyResponse,
    WaitlistSelectRequest,
)

__all__ = [
    "AlternateChargeResponse",
    "AlternateSelectRequest",
    "AlternateSelectResponse",
    "DiscountRefundInfoResponse",
    "IgnoreRequest",
    "PriceBreakdownResponse",
    "PurchaseMembershipRequest",
    "PurchaseRegistrationRequest",
    "PurchaseResponse",
    "RefundLineItemResponse",
    "RefundPreviewResponse",
    "RefundRequest",
    "RefundResponse",
    "StagingRecordResponse",
    "TransitionResponse",
    "VerifyResponse",
    "WaitlistSelectRequest",
]
