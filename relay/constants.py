"""
Tier tables and delivery defaults.

Quotas, retention and rate limits are keyed by subscription tier.
"""
import enum


class SubscriptionTier(str, enum.Enum):
    """Subscription tier enum."""
    FREE = "free"
    STARTER = "starter"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


# Monthly admitted webhooks per tier (None = unlimited)
WEBHOOK_QUOTAS: dict[SubscriptionTier, int | None] = {
    SubscriptionTier.FREE: 1000,
    SubscriptionTier.STARTER: 10000,
    SubscriptionTier.BUSINESS: 50000,
    SubscriptionTier.ENTERPRISE: None,
}

# Delivery record retention in days
LOG_RETENTION_DAYS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 3,
    SubscriptionTier.STARTER: 30,
    SubscriptionTier.BUSINESS: 90,
    SubscriptionTier.ENTERPRISE: 365,
}

# Receiver requests per minute, per endpoint
RATE_LIMITS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 10,
    SubscriptionTier.STARTER: 50,
    SubscriptionTier.BUSINESS: 200,
    SubscriptionTier.ENTERPRISE: 1000,
}

RATE_LIMIT_WINDOW_SECONDS = 60

# Default retry policy: one interval per retry, looked up by index
DEFAULT_MAX_RETRIES = 6
DEFAULT_RETRY_INTERVALS_MS = [
    0,           # retry 1: immediate
    60000,       # retry 2: +1 minute
    300000,      # retry 3: +5 minutes
    900000,      # retry 4: +15 minutes
    3600000,     # retry 5: +1 hour
    21600000,    # retry 6: +6 hours
]
MAX_RETRIES_LIMIT = 10

# Incoming headers kept on the delivery record besides every x-* header
SNAPSHOT_HEADERS = ("content-type", "user-agent", "x-forwarded-for")

SECRET_BYTES = 32
