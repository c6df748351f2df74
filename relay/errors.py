"""
Relay exception hierarchy.

Every error that can reach an HTTP caller inherits from RelayError and is
rendered as {success: false, error: {code, message, details}}.
"""


class RelayError(Exception):
    """Base exception for all relay errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert exception to the API error envelope."""
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class NotFoundError(RelayError):
    """
    Unknown or inactive resource.

    The receiver raises this with the same message whether the account or the
    endpoint is missing, so callers cannot tell which part of a URL is valid.
    """

    code = "NOT_FOUND"
    status_code = 404


class QuotaExceededError(RelayError):
    """Monthly webhook quota reached for the account's tier."""

    code = "QUOTA_EXCEEDED"
    status_code = 403

    def __init__(self, tier: str, limit: int | None, usage: int) -> None:
        super().__init__(
            f"Monthly webhook quota exceeded. Your {tier} tier allows {limit} webhooks per month.",
            details={"tier": tier, "limit": limit, "usage": usage},
        )


class ValidationError(RelayError):
    """Invalid input."""

    code = "VALIDATION_ERROR"
    status_code = 400


class RateLimitExceededError(RelayError):
    """Too many requests for one endpoint within the window."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            details={"retryAfter": retry_after},
        )


class QueueUnavailableError(RelayError):
    """A delivery record was persisted but its job could not be enqueued."""

    code = "QUEUE_UNAVAILABLE"
    status_code = 503


class DeliveryFailure(RelayError):
    """
    Destination returned non-2xx, timed out, or was unreachable.

    Raised and handled inside the dispatcher only; the sender has
    already received its 200.
    """

    code = "DELIVERY_FAILED"
    status_code = 502

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.response_status = status_code
        self.response_body = response_body


class ConfigurationMissing(RelayError):
    """Endpoint deleted between enqueue and processing."""

    code = "CONFIGURATION_MISSING"
    status_code = 404


class DeliveryNotRecorded(RelayError):
    """
    An attempt outcome could not be persisted, typically because the database
    is unreachable. The job is handed back to the queue instead of finishing.
    """

    code = "DELIVERY_NOT_RECORDED"
    status_code = 503
