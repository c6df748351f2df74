"""
Database models.

Importing this package registers every mapped class, so relationships
declared by name resolve no matter which model a caller touches first.
"""
from relay.models.base import Base, TimestampMixin, generate_id, utcnow
from relay.models.account import Account
from relay.models.endpoint import Endpoint
from relay.models.delivery import AttemptResult, DeliveryAttempt, DeliveryRecord, DeliveryStatus

__all__ = [
    "Account",
    "AttemptResult",
    "Base",
    "DeliveryAttempt",
    "DeliveryRecord",
    "DeliveryStatus",
    "Endpoint",
    "TimestampMixin",
    "generate_id",
    "utcnow",
]
