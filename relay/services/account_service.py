"""
Account service: resolution, quota gate and usage accounting.

SECURITY: Receiver lookups MUST filter on is_active so disabled accounts
cannot admit webhooks.
"""
from datetime import datetime, timedelta
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from relay.constants import LOG_RETENTION_DAYS, SubscriptionTier
from relay.models.account import Account, next_reset_date
from relay.models.base import utcnow


def retention_days(tier: SubscriptionTier) -> int:
    """Days a delivery record is kept for the given tier."""
    return LOG_RETENTION_DAYS.get(tier, LOG_RETENTION_DAYS[SubscriptionTier.FREE])


class AccountService:
    """Service for account lookups and monthly usage."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def get_active(self, account_id: str) -> Account | None:
        """
        Get an account that may receive webhooks.
        
        Args:
            account_id: Account UUID
            
        Returns:
            Account or None if missing or inactive
        """
        stmt = select(Account).where(
            Account.id == account_id,
            Account.is_active.is_(True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
    
    async def reset_usage_if_due(self, account: Account, now: datetime | None = None) -> bool:
        """
        Start a new monthly usage window once the reset date has passed.
        
        The check runs in SQL so concurrent receivers reset at most once.
        
        Returns:
            True if usage was reset
        """
        now = now or utcnow()
        next_reset = next_reset_date(now)
        stmt = (
            update(Account)
            .where(Account.id == account.id, Account.usage_reset_at <= now)
            .values(webhook_usage=0, usage_reset_at=next_reset)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount:
            await self.db.commit()
            set_committed_value(account, "webhook_usage", 0)
            set_committed_value(account, "usage_reset_at", next_reset)
            return True
        return False
    
    async def has_quota_remaining(self, account_id: str) -> bool:
        """True while usage is below the tier quota (or the tier is unlimited)."""
        stmt = select(Account.webhook_usage, Account.webhook_quota).where(Account.id == account_id)
        row = (await self.db.execute(stmt)).one_or_none()
        if row is None:
            return False
        usage, quota = row
        return quota is None or usage < quota
    
    async def increment_usage(self, account_id: str) -> bool:
        """
        Count one admitted webhook against the monthly quota.
        
        Conditional atomic update; runs in the caller's transaction and does
        not commit.
        
        Returns:
            False if the quota was reached concurrently
        """
        stmt = (
            update(Account)
            .where(
                Account.id == account_id,
                or_(Account.webhook_quota.is_(None), Account.webhook_usage < Account.webhook_quota)
            )
            .values(webhook_usage=Account.webhook_usage + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1
    
    def expires_at_for(self, account: Account, now: datetime | None = None) -> datetime:
        """Expiry stamp for a delivery record created now."""
        now = now or utcnow()
        return now + timedelta(days=retention_days(account.subscription_tier))
