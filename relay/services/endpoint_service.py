"""
Endpoint service.

SECURITY: The signing secret is a deferred column. Only callers that sign
(receiver, dispatcher, test delivery) or that must show it once (create,
regenerate) load it.
"""
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import undefer

from relay.models.account import Account
from relay.models.endpoint import Endpoint
from relay.services.signing import generate_secret


class EndpointService:
    """Service for managing destination endpoints."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def resolve(
        self,
        account_id: str,
        endpoint_id: str,
        with_secret: bool = False
    ) -> Endpoint | None:
        """
        Resolve an active endpoint owned by an active account.
        
        Args:
            account_id: Owning account UUID
            endpoint_id: Endpoint UUID
            with_secret: Load the signing secret
            
        Returns:
            Endpoint or None
        """
        stmt = (
            select(Endpoint)
            .join(Account, Account.id == Endpoint.account_id)
            .where(
                Endpoint.id == endpoint_id,
                Endpoint.account_id == account_id,
                Endpoint.is_active.is_(True),
                Account.is_active.is_(True)
            )
        )
        if with_secret:
            stmt = stmt.options(undefer(Endpoint.secret))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
    
    async def get_by_id(self, endpoint_id: str, with_secret: bool = False) -> Endpoint | None:
        """Get endpoint by ID regardless of state."""
        stmt = select(Endpoint).where(Endpoint.id == endpoint_id)
        if with_secret:
            stmt = stmt.options(undefer(Endpoint.secret))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
    
    async def get_for_account(
        self,
        endpoint_id: str,
        account_id: str,
        with_secret: bool = False
    ) -> Endpoint | None:
        """Get endpoint by ID within an account, active or not."""
        stmt = select(Endpoint).where(
            Endpoint.id == endpoint_id,
            Endpoint.account_id == account_id
        )
        if with_secret:
            stmt = stmt.options(undefer(Endpoint.secret))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
    
    async def create(
        self,
        account_id: str,
        name: str,
        destination_url: str,
        description: str | None = None,
        custom_headers: list[tuple[str, str]] | None = None,
        max_retries: int | None = None,
        retry_intervals_ms: list[int] | None = None
    ) -> Endpoint:
        """
        Create an endpoint with a generated secret.
        
        The returned instance still carries the secret; it is the only read
        that does.
        """
        kwargs = {}
        if max_retries is not None:
            kwargs["max_retries"] = max_retries
        endpoint = Endpoint.create(
            account_id=account_id,
            name=name,
            destination_url=destination_url,
            description=description,
            custom_headers=custom_headers,
            retry_intervals_ms=retry_intervals_ms,
            **kwargs
        )
        self.db.add(endpoint)
        await self.db.commit()
        return endpoint
    
    async def regenerate_secret(self, endpoint_id: str, account_id: str) -> str | None:
        """
        Replace the signing secret. The old one stops working immediately.
        
        Returns:
            The new secret, or None if the endpoint is not found
        """
        endpoint = await self.get_for_account(endpoint_id, account_id)
        if not endpoint:
            return None
        
        secret = generate_secret()
        endpoint.secret = secret
        await self.db.commit()
        return secret
    
    async def list_for_account(
        self,
        account_id: str,
        include_inactive: bool = False,
        page: int = 1,
        limit: int = 20
    ) -> tuple[list[Endpoint], int]:
        """
        List an account's endpoints, newest first.
        
        Returns:
            (endpoints on the requested page, total matching endpoints)
        """
        filters = [Endpoint.account_id == account_id]
        if not include_inactive:
            filters.append(Endpoint.is_active.is_(True))
        
        count_stmt = select(func.count()).select_from(Endpoint).where(*filters)
        total = (await self.db.execute(count_stmt)).scalar_one()
        
        stmt = (
            select(Endpoint)
            .where(*filters)
            .order_by(Endpoint.created_at.desc(), Endpoint.id)
            .offset((max(1, page) - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total
    
    async def update(
        self,
        endpoint_id: str,
        account_id: str,
        name: str | None = None,
        destination_url: str | None = None,
        description: str | None = None,
        custom_headers: list[tuple[str, str]] | None = None,
        max_retries: int | None = None,
        retry_intervals_ms: list[int] | None = None
    ) -> Endpoint | None:
        """
        Change endpoint settings. Arguments left as None are not touched.
        
        Queued jobs pick up the new destination, headers and retry policy on
        their next attempt.
        
        Returns:
            Updated endpoint, or None if not found
        """
        endpoint = await self.get_for_account(endpoint_id, account_id)
        if not endpoint:
            return None
        
        if name is not None:
            endpoint.name = name
        if destination_url is not None:
            endpoint.destination_url = destination_url
        if description is not None:
            endpoint.description = description
        if custom_headers is not None:
            endpoint.custom_headers = [[k, v] for k, v in custom_headers]
        if max_retries is not None:
            endpoint.max_retries = max_retries
        if retry_intervals_ms is not None:
            endpoint.retry_intervals_ms = list(retry_intervals_ms)
        
        await self.db.commit()
        return endpoint
    
    async def deactivate(self, endpoint_id: str, account_id: str) -> Endpoint | None:
        """
        Soft-delete an endpoint.
        
        The row stays so existing delivery records keep their endpoint; the
        receiver stops admitting webhooks for it and queued deliveries fail
        with "Endpoint not found".
        
        Returns:
            The deactivated endpoint, or None if not found
        """
        endpoint = await self.get_for_account(endpoint_id, account_id)
        if not endpoint:
            return None
        
        endpoint.is_active = False
        await self.db.commit()
        return endpoint
