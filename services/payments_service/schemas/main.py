import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from services.payments_service.models import (
    InvoiceType,
    LineItemType,
    RefundStatus,
    RefundType,
    SyncStatus,
)


class PurchaseRegistrationRequest(BaseModel):
    category_id: uuid.UUID
    discount_code: Optional[str] = Field(default=None, max_length=50)
    presale_code: Optional[str] = Field(default=None, max_length=64)


class PurchaseMembershipRequest(BaseModel):
    # 12 buys the annual price; fewer buys that many monthly periods
    months: int = Field(default=12, ge=1, le=12)
    discount_code: Optional[str] = Field(default=None, max_length=50)


class WaitlistSelectRequest(BaseModel):
    # Cents; replaces the category price before any saved discount
    override_price: Optional[int] = Field(default=None, ge=0)


class PriceBreakdownResponse(BaseModel):
    # All amounts in cents
    gross: int
    discount: int
    net: int

    model_config = ConfigDict(from_attributes=True)


class PurchaseResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    discount_message: Optional[str] = None
    price: Optional[PriceBreakdownResponse] = None
    staging_id: Optional[uuid.UUID] = None
    payment_id: Optional[uuid.UUID] = None
    user_registration_id: Optional[uuid.UUID] = None
    user_membership_id: Optional[uuid.UUID] = None


class RefundRequest(BaseModel):
    payment_id: uuid.UUID
    refund_type: RefundType = RefundType.PROPORTIONAL
    # Cents; required for proportional refunds
    amount: Optional[int] = Field(default=None, ge=0)
    discount_code: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundLineItemResponse(BaseModel):
    line_item_type: LineItemType
    description: str
    amount: int
    account_code: Optional[str] = None
    discount_code_id: Optional[uuid.UUID] = None

    model_config = ConfigDict(from_attributes=True)


class DiscountRefundInfoResponse(BaseModel):
    code: str
    category: str
    percentage: int
    is_partial: bool
    message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RefundPreviewResponse(BaseModel):
    payment_id: uuid.UUID
    refund_type: RefundType
    kind: str  # full | partial
    total_amount: int
    original_amount: int
    available_for_refund: int
    line_items: list[RefundLineItemResponse] = Field(default_factory=list)
    discount_info: Optional[DiscountRefundInfoResponse] = None


class RefundResponse(BaseModel):
    refund_id: uuid.UUID
    staging_id: uuid.UUID
    status: RefundStatus
    kind: str
    amount: int
    message: str
    registrations_released: list[uuid.UUID] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class StagingRecordResponse(BaseModel):
    id: uuid.UUID
    invoice_number: str
    invoice_type: InvoiceType
    user_id: uuid.UUID
    payment_id: Optional[uuid.UUID] = None
    refund_id: Optional[uuid.UUID] = None
    total_amount: int
    discount_amount: int
    net_amount: int
    sync_status: SyncStatus
    sync_error: Optional[str] = None
    staged_at: datetime
    synced_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VerifyResponse(BaseModel):
    staging_id: uuid.UUID
    action: str
    sync_status: SyncStatus
    detail: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class TransitionResponse(BaseModel):
    staging_id: uuid.UUID
    applied: bool
    sync_status: SyncStatus


class IgnoreRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AlternateSelectRequest(BaseModel):
    user_ids: list[uuid.UUID] = Field(min_length=1)


class AlternateChargeResponse(BaseModel):
    user_id: uuid.UUID
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    payment_id: Optional[uuid.UUID] = None
    # Cents
    amount_charged: Optional[int] = None


class AlternateSelectResponse(BaseModel):
    game_id: uuid.UUID
    selected: int
    results: list[AlternateChargeResponse]
