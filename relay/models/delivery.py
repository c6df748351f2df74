"""
Delivery record and attempt models.

A DeliveryRecord tracks one received webhook through all of its delivery
attempts. Attempts are append-only and ordered by attempt_number from 1.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, ForeignKey, JSON,
    UniqueConstraint, Index, Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from relay.models.base import Base, TimestampMixin, enum_values, generate_id, utcnow


class DeliveryStatus(str, enum.Enum):
    """Delivery status enum."""
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.FAILED})


class DeliveryRecord(Base, TimestampMixin):
    """
    Durable record of one received webhook.
    
    endpoint_id carries no foreign key: the endpoint may be deleted while
    records referencing it are still retained.
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_account_received", "account_id", "received_at"),
        Index("ix_webhook_deliveries_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    endpoint_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    incoming_headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    attempts = relationship(
        "DeliveryAttempt",
        back_populates="delivery",
        order_by="DeliveryAttempt.attempt_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def last_attempt(self) -> "DeliveryAttempt | None":
        return self.attempts[-1] if self.attempts else None

    @property
    def average_response_time_ms(self) -> int:
        if not self.attempts:
            return 0
        return round(sum(a.response_time_ms or 0 for a in self.attempts) / len(self.attempts))

    def __repr__(self):
        return f"<DeliveryRecord(id={self.id}, status={self.status}, retry_count={self.retry_count})>"


class DeliveryAttempt(Base):
    """One outbound HTTP try against the destination."""
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint("delivery_id", "attempt_number", name="uq_delivery_attempt_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    delivery_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhook_deliveries.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    request_headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    delivery = relationship("DeliveryRecord", back_populates="attempts")

    def __repr__(self):
        return f"<DeliveryAttempt(delivery_id={self.delivery_id}, n={self.attempt_number}, success={self.success})>"


@dataclass
class AttemptResult:
    """Outcome of one outbound call, before it is persisted."""
    success: bool
    request_headers: dict[str, str] = field(default_factory=dict)
    status_code: int | None = None
    response_body: str | None = None
    response_time_ms: int | None = None
    error_message: str | None = None
