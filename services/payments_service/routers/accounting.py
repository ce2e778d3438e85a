"""Admin view of staged accounting records and their sync state."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from libs.db.session import get_async_db
from services.payments_service.models import SyncStatus
from services.payments_service.schemas import (
    IgnoreRequest,
    StagingRecordResponse,
    TransitionResponse,
    VerifyResponse,
)
from services.payments_service.services import reconciliation, staging
from services.payments_service.stripe_client import StripeClient, get_stripe_client
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/accounting", tags=["admin-accounting"])


def _staging_http_error(e: staging.StagingError) -> HTTPException:
    if isinstance(e, staging.StagingRecordNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


@router.get("/pending", response_model=list[StagingRecordResponse])
async def list_pending_records(
    sync_status: Optional[SyncStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Records awaiting sync (``pending``) or, with ``?status=staged``, settlement."""
    statuses = (sync_status,) if sync_status else (SyncStatus.PENDING,)
    return await staging.get_pending_staging_records(
        db, statuses=statuses, limit=limit
    )


@router.post("/{staging_id}/verify", response_model=VerifyResponse)
async def verify_record(
    staging_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    stripe: StripeClient = Depends(get_stripe_client),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """Check a staged record against Stripe and confirm or roll it back."""
    try:
        outcome = await reconciliation.verify_transaction(
            db, stripe, staging_id, notifier=notifier
        )
    except staging.StagingError as e:
        raise _staging_http_error(e)
    return VerifyResponse(
        staging_id=outcome.staging_id,
        action=outcome.action.value,
        sync_status=outcome.sync_status,
        detail=outcome.detail,
    )


@router.post("/{staging_id}/synced", response_model=TransitionResponse)
async def mark_synced(
    staging_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    try:
        applied = await staging.mark_transaction_synced(db, staging_id)
        invoice = await staging.get_staging_record(db, staging_id)
    except staging.StagingError as e:
        raise _staging_http_error(e)
    return TransitionResponse(
        staging_id=staging_id, applied=applied, sync_status=invoice.sync_status
    )


@router.post("/{staging_id}/ignore", response_model=TransitionResponse)
async def ignore_record(
    staging_id: uuid.UUID,
    payload: IgnoreRequest,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    try:
        applied = await staging.ignore_transaction(db, staging_id, payload.reason)
        invoice = await staging.get_staging_record(db, staging_id)
    except staging.StagingError as e:
        raise _staging_http_error(e)
    return TransitionResponse(
        staging_id=staging_id, applied=applied, sync_status=invoice.sync_status
    )
