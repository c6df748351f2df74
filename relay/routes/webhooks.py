"""
Webhook delivery API routes.

Read and retry delivery records owned by the authenticated account.
"""
import math
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from relay.database import get_db
from relay.dependencies.auth import get_current_account, TokenPayload
from relay.dependencies.services import get_ingestion_service
from relay.errors import NotFoundError
from relay.models.delivery import DeliveryStatus
from relay.routes.serializers import delivery_to_dict
from relay.services.delivery_store import DeliveryStore, MAX_PAGE_SIZE
from relay.services.ingestion_service import IngestionService


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.get("", response_model=dict)
async def list_webhooks(
    endpoint_id: str | None = None,
    status: DeliveryStatus | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """
    List delivery records for the account, newest first.
    
    Filters by endpoint, status and received date range.
    """
    store = DeliveryStore(db)
    records, total = await store.list_for_account(
        token.account_id,
        endpoint_id=endpoint_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit
    )
    
    return {
        "success": True,
        "data": {
            "webhooks": [delivery_to_dict(r, include_attempts=False) for r in records],
            "pagination": {
                "currentPage": page,
                "totalPages": math.ceil(total / limit),
                "totalItems": total,
                "itemsPerPage": limit,
            },
        },
    }


@router.get("/{delivery_id}", response_model=dict)
async def get_webhook(
    delivery_id: str,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """Get one delivery record with its attempts."""
    record = await DeliveryStore(db).get(delivery_id, account_id=token.account_id)
    if record is None:
        raise NotFoundError("Webhook not found")
    
    return {"success": True, "data": {"webhook": delivery_to_dict(record)}}


@router.post("/{delivery_id}/retry", response_model=dict)
async def retry_webhook(
    delivery_id: str,
    token: TokenPayload = Depends(get_current_account),
    service: IngestionService = Depends(get_ingestion_service)
):
    """
    Manually retry a delivery that has not succeeded.
    
    Returns 400 if the webhook was already delivered.
    """
    record = await service.retry(token.account_id, delivery_id)
    
    return {
        "success": True,
        "data": {"webhookId": record.id, "status": "queued"},
        "message": "Webhook queued for retry",
    }
