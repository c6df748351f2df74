"""
Public webhook receiver.

POST /webhook/{account_id}/{endpoint_id} admits a webhook and returns as
soon as it is queued; delivery happens in the worker.
"""
import json

from fastapi import APIRouter, Depends, Request

from relay.errors import ValidationError
from relay.services.ingestion_service import IngestionService
from relay.dependencies.services import get_ingestion_service


router = APIRouter(tags=["receiver"])


@router.post("/webhook/{account_id}/{endpoint_id}", response_model=dict)
async def receive_webhook(
    account_id: str,
    endpoint_id: str,
    request: Request,
    service: IngestionService = Depends(get_ingestion_service)
):
    """
    Receive a webhook for one of an account's endpoints.
    
    The body must be JSON. It is stored and forwarded byte for byte.
    """
    body = await request.body()
    try:
        payload = body.decode("utf-8")
        json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Request body must be valid JSON")
    
    record = await service.receive(account_id, endpoint_id, payload, request.headers)
    
    return {
        "success": True,
        "data": {
            "webhookId": record.id,
            "status": "queued",
            "message": "Webhook received and queued for delivery",
        },
        "message": "Webhook accepted",
    }
