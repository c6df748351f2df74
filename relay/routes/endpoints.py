"""
Endpoint API routes.

Manage the account's destination endpoints: create, list, read, update,
soft-delete, rotate signing secrets, read delivery statistics and send a
signed test request. The secret is returned only by create and
regenerate-secret.
"""
import json
import math

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, HttpUrl, NonNegativeInt
from sqlalchemy.ext.asyncio import AsyncSession

from relay.config import settings
from relay.constants import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_INTERVALS_MS, MAX_RETRIES_LIMIT
from relay.database import get_db
from relay.dependencies.auth import get_current_account, TokenPayload
from relay.dependencies.services import get_dispatcher
from relay.errors import NotFoundError
from relay.logging_config import get_logger
from relay.models.base import generate_id, utcnow
from relay.routes.serializers import endpoint_to_dict, stats_to_dict
from relay.services.dispatcher import Dispatcher
from relay.services.endpoint_service import EndpointService


router = APIRouter(prefix="/api/endpoints", tags=["endpoints"])

MAX_ENDPOINT_PAGE_SIZE = 100


class CustomHeader(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    value: str


class RetryConfig(BaseModel):
    """
    Retry policy for an endpoint.
    
    maxRetries counts retries after the first attempt, so a delivery is
    attempted at most maxRetries + 1 times. retryIntervals[i] is the delay in
    milliseconds before retry i + 1; a table shorter than maxRetries ends the
    retries early.
    """
    maxRetries: int = Field(DEFAULT_MAX_RETRIES, ge=0, le=MAX_RETRIES_LIMIT)
    retryIntervals: list[NonNegativeInt] = Field(default_factory=lambda: list(DEFAULT_RETRY_INTERVALS_MS))


class RetryConfigUpdate(BaseModel):
    """Partial retry policy change; same meaning as RetryConfig."""
    maxRetries: int | None = Field(None, ge=0, le=MAX_RETRIES_LIMIT)
    retryIntervals: list[NonNegativeInt] | None = None


class CreateEndpointRequest(BaseModel):
    """Request model for creating an endpoint."""
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(None, max_length=500)
    destinationUrl: HttpUrl
    customHeaders: list[CustomHeader] = Field(default_factory=list)
    retryConfig: RetryConfig = Field(default_factory=RetryConfig)


class UpdateEndpointRequest(BaseModel):
    """Request model for updating an endpoint. Omitted fields are unchanged."""
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=500)
    destinationUrl: HttpUrl | None = None
    customHeaders: list[CustomHeader] | None = None
    retryConfig: RetryConfigUpdate | None = None


class SendTestRequest(BaseModel):
    """Optional body for a test delivery."""
    payload: dict | None = None


@router.post("", response_model=dict, status_code=201)
async def create_endpoint(
    request: CreateEndpointRequest,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """
    Create an endpoint.
    
    The generated signing secret is shown in this response only.
    """
    service = EndpointService(db)
    endpoint = await service.create(
        account_id=token.account_id,
        name=request.name,
        destination_url=str(request.destinationUrl),
        description=request.description,
        custom_headers=[(h.name, h.value) for h in request.customHeaders],
        max_retries=request.retryConfig.maxRetries,
        retry_intervals_ms=request.retryConfig.retryIntervals
    )
    
    get_logger(account_id=token.account_id, endpoint_id=endpoint.id).info("endpoint_created")
    
    data = endpoint_to_dict(endpoint, settings.API_URL)
    data["secret"] = endpoint.secret
    return {
        "success": True,
        "data": {"endpoint": data},
        "message": "Endpoint created. Store the secret now, it will not be shown again.",
    }


@router.get("", response_model=dict)
async def list_endpoints(
    include_inactive: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_ENDPOINT_PAGE_SIZE),
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """List the account's endpoints, newest first. Deleted ones only on request."""
    endpoints, total = await EndpointService(db).list_for_account(
        token.account_id,
        include_inactive=include_inactive,
        page=page,
        limit=limit
    )
    
    return {
        "success": True,
        "data": {
            "endpoints": [endpoint_to_dict(e, settings.API_URL) for e in endpoints],
            "pagination": {
                "currentPage": page,
                "totalPages": math.ceil(total / limit),
                "totalItems": total,
                "itemsPerPage": limit,
            },
        },
    }


@router.get("/{endpoint_id}", response_model=dict)
async def get_endpoint(
    endpoint_id: str,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """Endpoint details, without the secret."""
    endpoint = await EndpointService(db).get_for_account(endpoint_id, token.account_id)
    if endpoint is None:
        raise NotFoundError("Endpoint not found")
    
    return {"success": True, "data": {"endpoint": endpoint_to_dict(endpoint, settings.API_URL)}}


@router.put("/{endpoint_id}", response_model=dict)
async def update_endpoint(
    endpoint_id: str,
    request: UpdateEndpointRequest,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """
    Update an endpoint.
    
    Deliveries already queued use the new settings from their next attempt.
    """
    retry = request.retryConfig or RetryConfigUpdate()
    endpoint = await EndpointService(db).update(
        endpoint_id,
        token.account_id,
        name=request.name,
        destination_url=str(request.destinationUrl) if request.destinationUrl else None,
        description=request.description,
        custom_headers=(
            [(h.name, h.value) for h in request.customHeaders]
            if request.customHeaders is not None else None
        ),
        max_retries=retry.maxRetries,
        retry_intervals_ms=retry.retryIntervals
    )
    if endpoint is None:
        raise NotFoundError("Endpoint not found")
    
    get_logger(account_id=token.account_id, endpoint_id=endpoint_id).info("endpoint_updated")
    
    return {
        "success": True,
        "data": {"endpoint": endpoint_to_dict(endpoint, settings.API_URL)},
        "message": "Endpoint updated",
    }


@router.delete("/{endpoint_id}", response_model=dict)
async def delete_endpoint(
    endpoint_id: str,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """
    Soft-delete an endpoint.
    
    Its receiver URL stops accepting webhooks and queued deliveries fail.
    Delivery history stays readable until it expires.
    """
    endpoint = await EndpointService(db).deactivate(endpoint_id, token.account_id)
    if endpoint is None:
        raise NotFoundError("Endpoint not found")
    
    get_logger(account_id=token.account_id, endpoint_id=endpoint_id).info("endpoint_deleted")
    
    return {
        "success": True,
        "data": {"id": endpoint.id, "name": endpoint.name, "isActive": False},
        "message": "Endpoint deleted",
    }


@router.post("/{endpoint_id}/regenerate-secret", response_model=dict)
async def regenerate_secret(
    endpoint_id: str,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """Rotate the signing secret. The previous secret stops working immediately."""
    secret = await EndpointService(db).regenerate_secret(endpoint_id, token.account_id)
    if secret is None:
        raise NotFoundError("Endpoint not found")
    
    get_logger(account_id=token.account_id, endpoint_id=endpoint_id).info("endpoint_secret_regenerated")
    
    return {
        "success": True,
        "data": {"secret": secret},
        "message": "Secret regenerated. Update your verification code.",
    }


@router.get("/{endpoint_id}/stats", response_model=dict)
async def get_endpoint_stats(
    endpoint_id: str,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db)
):
    """Delivery statistics for one endpoint."""
    endpoint = await EndpointService(db).get_for_account(endpoint_id, token.account_id)
    if endpoint is None:
        raise NotFoundError("Endpoint not found")
    
    return {"success": True, "data": {"stats": stats_to_dict(endpoint)}}


@router.post("/{endpoint_id}/test", response_model=dict)
async def send_test_webhook(
    endpoint_id: str,
    request: SendTestRequest | None = None,
    token: TokenPayload = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher)
):
    """
    Send one signed request to the destination now and report the response.
    
    Nothing is stored: no delivery record, no quota use, no statistics.
    """
    endpoint = await EndpointService(db).get_for_account(endpoint_id, token.account_id, with_secret=True)
    if endpoint is None or not endpoint.is_active:
        raise NotFoundError("Endpoint not found")
    
    payload = request.payload if request and request.payload is not None else {
        "test": True,
        "timestamp": utcnow().isoformat(),
    }
    test_id = f"test-{generate_id()}"
    result = await dispatcher.send(
        test_id,
        endpoint.destination_url,
        endpoint.secret,
        endpoint.header_pairs,
        json.dumps(payload, separators=(",", ":")),
    )
    
    get_logger(account_id=token.account_id, endpoint_id=endpoint_id).info(
        "endpoint_test_sent", success=result.success, status_code=result.status_code
    )
    
    return {
        "success": True,
        "data": {
            "webhookId": test_id,
            "delivered": result.success,
            "responseStatus": result.status_code,
            "responseTime": result.response_time_ms,
            "responseBody": (result.response_body or "")[:settings.RESPONSE_BODY_LIMIT] or None,
            "errorMessage": result.error_message,
        },
        "message": "Test webhook delivered" if result.success else "Test webhook failed",
    }
