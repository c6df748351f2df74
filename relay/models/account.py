"""
Account model.

Represents a subscribed account owning endpoints and a monthly webhook quota.
"""
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from relay.constants import SubscriptionTier, WEBHOOK_QUOTAS
from relay.models.base import Base, TimestampMixin, enum_values, generate_id, utcnow


def next_reset_date(now: datetime) -> datetime:
    """First instant of the month following `now`."""
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


class Account(Base, TimestampMixin):
    """
    Account model.
    
    webhook_quota is None for tiers without a monthly cap.
    """
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_tier: Mapped[SubscriptionTier] = mapped_column(
        SQLEnum(SubscriptionTier, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=SubscriptionTier.FREE
    )
    webhook_quota: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    endpoints = relationship(
        "Endpoint",
        back_populates="account",
        cascade="all, delete-orphan"
    )

    @classmethod
    def create(
        cls,
        email: str,
        name: str | None = None,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        now: datetime | None = None,
    ) -> "Account":
        """Build an account with the quota and reset date of its tier."""
        now = now or utcnow()
        return cls(
            id=generate_id(),
            email=email,
            name=name,
            subscription_tier=tier,
            webhook_quota=WEBHOOK_QUOTAS[tier],
            webhook_usage=0,
            usage_reset_at=next_reset_date(now),
            is_active=True,
        )

    def __repr__(self):
        return f"<Account(id={self.id}, tier={self.subscription_tier}, usage={self.webhook_usage})>"
