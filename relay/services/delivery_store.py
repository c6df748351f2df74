"""
Delivery record store.

Owns every status transition of a DeliveryRecord:

    pending  --attempt ok-------------------------> success
    pending  --attempt failed, interval left------> retrying
    retrying --attempt ok-------------------------> success
    retrying --attempt failed, interval left------> retrying
    pending|retrying --attempt failed, no interval-> failed
    failed|retrying --manual retry----------------> pending

success and failed are terminal for automatic processing; only a manual
retry may reopen a failed record, and nothing reopens a success.
Records past expires_at are invisible to every read and are deleted by
purge_expired.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from relay.config import settings
from relay.errors import ValidationError
from relay.models.base import utcnow
from relay.models.delivery import (
    AttemptResult, DeliveryAttempt, DeliveryRecord, DeliveryStatus,
)
from relay.queue import RetryPolicy

logger = structlog.get_logger()

MAX_PAGE_SIZE = 100
ERROR_MESSAGE_LIMIT = 2000


@dataclass
class RecordedAttempt:
    """A persisted attempt and the transition it caused."""
    record: DeliveryRecord
    attempt: DeliveryAttempt
    retry_delay_ms: int | None = None

    @property
    def retry_scheduled(self) -> bool:
        return self.retry_delay_ms is not None


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit]


class DeliveryStore:
    """Durable, queryable store of delivery records and attempts."""
    
    def __init__(self, db: AsyncSession, response_body_limit: int | None = None):
        self.db = db
        self.response_body_limit = response_body_limit or settings.RESPONSE_BODY_LIMIT
    
    @staticmethod
    def _live(now: datetime):
        return DeliveryRecord.expires_at > now
    
    async def create(
        self,
        account_id: str,
        endpoint_id: str,
        payload: str,
        headers: dict[str, str],
        expires_at: datetime,
        now: datetime | None = None
    ) -> DeliveryRecord:
        """
        Create a pending record with zero attempts.
        
        Flushes but does not commit, so the caller can count usage in the
        same transaction.
        """
        record = DeliveryRecord(
            account_id=account_id,
            endpoint_id=endpoint_id,
            payload=payload,
            incoming_headers=dict(headers),
            received_at=now or utcnow(),
            status=DeliveryStatus.PENDING,
            retry_count=0,
            last_attempt_at=None,
            next_retry_at=None,
            expires_at=expires_at,
            attempts=[],
        )
        self.db.add(record)
        await self.db.flush()
        return record
    
    async def get(
        self,
        delivery_id: str,
        account_id: str | None = None,
        now: datetime | None = None
    ) -> DeliveryRecord | None:
        """
        Get a live record by ID, optionally scoped to an account.
        
        Args:
            delivery_id: Record UUID
            account_id: Owning account UUID (required for management reads)
            
        Returns:
            DeliveryRecord with ordered attempts, or None
        """
        stmt = select(DeliveryRecord).where(
            DeliveryRecord.id == delivery_id,
            self._live(now or utcnow())
        )
        if account_id is not None:
            stmt = stmt.where(DeliveryRecord.account_id == account_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
    
    async def list_for_account(
        self,
        account_id: str,
        endpoint_id: str | None = None,
        status: DeliveryStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page: int = 1,
        limit: int = 20,
        now: datetime | None = None
    ) -> tuple[list[DeliveryRecord], int]:
        """
        List live records for an account, newest first.
        
        Returns:
            (records on the requested page, total matching records)
        """
        page = max(1, page)
        limit = min(MAX_PAGE_SIZE, max(1, limit))
        
        filters = [
            DeliveryRecord.account_id == account_id,
            self._live(now or utcnow()),
        ]
        if endpoint_id:
            filters.append(DeliveryRecord.endpoint_id == endpoint_id)
        if status:
            filters.append(DeliveryRecord.status == status)
        if start_date:
            filters.append(DeliveryRecord.received_at >= start_date)
        if end_date:
            filters.append(DeliveryRecord.received_at <= end_date)
        
        count_stmt = select(func.count()).select_from(DeliveryRecord).where(*filters)
        total = (await self.db.execute(count_stmt)).scalar_one()
        
        stmt = (
            select(DeliveryRecord)
            .where(*filters)
            .order_by(DeliveryRecord.received_at.desc(), DeliveryRecord.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total
    
    async def _lock(self, delivery_id: str, account_id: str | None = None) -> DeliveryRecord | None:
        stmt = (
            select(DeliveryRecord)
            .where(DeliveryRecord.id == delivery_id, self._live(utcnow()))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if account_id is not None:
            stmt = stmt.where(DeliveryRecord.account_id == account_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
    
    async def record_attempt(
        self,
        delivery_id: str,
        result: AttemptResult,
        retry_policy: RetryPolicy | None,
        now: datetime | None = None,
        attempt_number: int | None = None
    ) -> RecordedAttempt | None:
        """
        Append an attempt and apply the resulting transition.

        The record row is locked for the duration, so attempts on one record
        are numbered strictly in order. A failed attempt schedules a retry
        when the policy still has an interval at index (attempts made - 1);
        otherwise the record fails permanently. A None policy always fails.

        Args:
            attempt_number: Expected number of this attempt. When given and
                another attempt already took that number, nothing is written.

        Returns:
            RecordedAttempt, or None if the record is gone, already terminal,
            or the expected attempt number is stale
        """
        now = now or utcnow()
        record = await self._lock(delivery_id)
        if record is None:
            await self.db.rollback()
            return None
        if record.is_terminal:
            logger.info(
                "attempt_dropped_for_terminal_record",
                delivery_id=delivery_id,
                status=record.status.value,
            )
            await self.db.rollback()
            return None

        next_number = len(record.attempts) + 1
        if attempt_number is not None and attempt_number != next_number:
            logger.info(
                "attempt_dropped_for_stale_job",
                delivery_id=delivery_id,
                attempt_number=attempt_number,
                expected=next_number,
            )
            await self.db.rollback()
            return None
        attempt_number = next_number
        attempt = DeliveryAttempt(
            delivery_id=record.id,
            attempt_number=attempt_number,
            attempted_at=now,
            request_headers=dict(result.request_headers),
            response_status=result.status_code,
            response_body=_truncate(result.response_body, self.response_body_limit),
            response_time_ms=result.response_time_ms,
            error_message=_truncate(result.error_message, ERROR_MESSAGE_LIMIT),
            success=result.success,
        )
        record.attempts.append(attempt)
        record.retry_count = attempt_number
        record.last_attempt_at = now
        
        retry_delay_ms = None
        if result.success:
            record.status = DeliveryStatus.SUCCESS
            record.next_retry_at = None
        else:
            delay = retry_policy.delay_for(attempt_number - 1) if retry_policy else None
            if delay is None:
                record.status = DeliveryStatus.FAILED
                record.next_retry_at = None
            else:
                record.status = DeliveryStatus.RETRYING
                # strictly in the future even for a zero interval
                record.next_retry_at = now + timedelta(milliseconds=max(delay, 1))
                retry_delay_ms = delay
        
        await self.db.commit()
        return RecordedAttempt(record=record, attempt=attempt, retry_delay_ms=retry_delay_ms)
    
    async def reset_for_manual_retry(self, delivery_id: str, account_id: str) -> DeliveryRecord | None:
        """
        Reopen a failed or retrying record as pending. Prior attempts are kept.
        
        Raises:
            ValidationError: if the record was already delivered
        """
        record = await self._lock(delivery_id, account_id)
        if record is None:
            await self.db.rollback()
            return None
        if record.status == DeliveryStatus.SUCCESS:
            await self.db.rollback()
            raise ValidationError("Webhook already delivered successfully")
        
        record.status = DeliveryStatus.PENDING
        record.next_retry_at = None
        await self.db.commit()
        return record
    
    async def purge_expired(self, now: datetime | None = None) -> int:
        """
        Delete every record at or past its expiry, with its attempts.
        
        Returns:
            Number of records deleted
        """
        now = now or utcnow()
        expired_ids = select(DeliveryRecord.id).where(DeliveryRecord.expires_at <= now)
        await self.db.execute(
            delete(DeliveryAttempt)
            .where(DeliveryAttempt.delivery_id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            delete(DeliveryRecord)
            .where(DeliveryRecord.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount
