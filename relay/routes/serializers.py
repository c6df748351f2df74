"""
Response shapes for the management API.

Keys are camelCase. Secrets are never part of these shapes.
"""
from datetime import datetime

from relay.models.delivery import DeliveryAttempt, DeliveryRecord
from relay.models.endpoint import Endpoint


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def attempt_to_dict(attempt: DeliveryAttempt) -> dict:
    return {
        "attemptNumber": attempt.attempt_number,
        "timestamp": _iso(attempt.attempted_at),
        "requestHeaders": attempt.request_headers,
        "responseStatus": attempt.response_status,
        "responseBody": attempt.response_body,
        "responseTime": attempt.response_time_ms,
        "errorMessage": attempt.error_message,
        "success": attempt.success,
    }


def delivery_to_dict(record: DeliveryRecord, include_attempts: bool = True) -> dict:
    """Serialize a delivery record, optionally with its attempts."""
    data = {
        "id": record.id,
        "accountId": record.account_id,
        "endpointId": record.endpoint_id,
        "payload": record.payload,
        "headers": record.incoming_headers,
        "receivedAt": _iso(record.received_at),
        "status": record.status.value,
        "retryCount": record.retry_count,
        "lastAttemptAt": _iso(record.last_attempt_at),
        "nextRetryAt": _iso(record.next_retry_at),
        "expiresAt": _iso(record.expires_at),
        "averageResponseTime": record.average_response_time_ms,
    }
    if include_attempts:
        data["attempts"] = [attempt_to_dict(a) for a in record.attempts]
    return data


def endpoint_to_dict(endpoint: Endpoint, base_url: str) -> dict:
    return {
        "id": endpoint.id,
        "name": endpoint.name,
        "description": endpoint.description,
        "destinationUrl": endpoint.destination_url,
        "webhookUrl": endpoint.webhook_url(base_url),
        "customHeaders": [{"name": k, "value": v} for k, v in endpoint.header_pairs],
        "retryConfig": {
            "maxRetries": endpoint.max_retries,
            "retryIntervals": list(endpoint.retry_intervals_ms or []),
        },
        "isActive": endpoint.is_active,
        "successRate": endpoint.success_rate,
    }


def stats_to_dict(endpoint: Endpoint) -> dict:
    return {
        "endpointId": endpoint.id,
        "totalRequests": endpoint.total_requests,
        "successfulRequests": endpoint.successful_requests,
        "failedRequests": endpoint.failed_requests,
        "successRate": endpoint.success_rate,
        "averageResponseTime": endpoint.average_response_time_ms,
        "lastRequestAt": _iso(endpoint.last_request_at),
    }
