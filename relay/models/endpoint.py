"""
Endpoint model.

A destination configuration owned by an account: URL, signing secret,
custom headers, retry policy and running delivery statistics.
"""
from datetime import datetime
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from relay.constants import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_INTERVALS_MS
from relay.models.base import Base, TimestampMixin, generate_id
from relay.queue import RetryPolicy
from relay.services.signing import generate_secret


class Endpoint(Base, TimestampMixin):
    """
    Endpoint model.
    
    The secret column is deferred: it is only loaded when a query asks for it
    with undefer(), so list and detail reads never carry it.
    custom_headers is an ordered list of [name, value] pairs.
    """
    __tablename__ = "endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    destination_url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(String(128), nullable=False, deferred=True)
    custom_headers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Retry policy: up to max_retries retries after the first attempt, so
    # max_retries + 1 attempts in all; retry_intervals_ms[i] precedes retry i+1
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
    retry_intervals_ms: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Statistics
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_request_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    average_response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    account = relationship("Account", back_populates="endpoints")

    @classmethod
    def create(
        cls,
        account_id: str,
        name: str,
        destination_url: str,
        description: str | None = None,
        custom_headers: list[tuple[str, str]] | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_intervals_ms: list[int] | None = None,
    ) -> "Endpoint":
        """Build an endpoint with a freshly generated signing secret."""
        return cls(
            id=generate_id(),
            account_id=account_id,
            name=name,
            description=description,
            destination_url=destination_url,
            secret=generate_secret(),
            custom_headers=[[k, v] for k, v in (custom_headers or [])],
            is_active=True,
            max_retries=max_retries,
            retry_intervals_ms=list(
                DEFAULT_RETRY_INTERVALS_MS if retry_intervals_ms is None else retry_intervals_ms
            ),
            total_requests=0,
            successful_requests=0,
            failed_requests=0,
            last_request_at=None,
            average_response_time_ms=0,
        )

    @property
    def header_pairs(self) -> list[tuple[str, str]]:
        return [(str(k), str(v)) for k, v in (self.custom_headers or [])]

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, intervals_ms=list(self.retry_intervals_ms or []))

    @property
    def success_rate(self) -> float:
        """Percentage of successful attempts; 100 before any attempt."""
        if not self.total_requests:
            return 100.0
        return round(self.successful_requests / self.total_requests * 100, 2)

    def webhook_url(self, base_url: str) -> str:
        """Public receiver URL for this endpoint."""
        return f"{base_url.rstrip('/')}/webhook/{self.account_id}/{self.id}"

    def __repr__(self):
        return f"<Endpoint(id={self.id}, account_id={self.account_id}, active={self.is_active})>"
