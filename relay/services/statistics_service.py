"""
Endpoint statistics aggregator.

Each call is a single UPDATE whose right-hand sides read the row's current
values, so concurrent workers recording against one endpoint never lose an
increment.
"""
from datetime import datetime
from sqlalchemy import Float, Integer, cast, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.models.base import utcnow
from relay.models.endpoint import Endpoint


class StatisticsService:
    """Running delivery counters per endpoint."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def record(
        self,
        endpoint_id: str,
        success: bool,
        latency_ms: int,
        now: datetime | None = None
    ) -> bool:
        """
        Record one attempted delivery.
        
        average_response_time_ms becomes (avg * (n - 1) + latency) / n where
        n is the new total.
        
        Returns:
            False if the endpoint no longer exists
        """
        total = Endpoint.total_requests
        stmt = (
            update(Endpoint)
            .where(Endpoint.id == endpoint_id)
            .values(
                total_requests=total + 1,
                successful_requests=Endpoint.successful_requests + (1 if success else 0),
                failed_requests=Endpoint.failed_requests + (0 if success else 1),
                last_request_at=now or utcnow(),
                average_response_time_ms=cast(func.round(
                    (cast(Endpoint.average_response_time_ms, Float) * total + max(latency_ms, 0))
                    / (total + 1)
                ), Integer),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1
