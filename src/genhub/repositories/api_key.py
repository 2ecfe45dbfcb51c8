"""ApiKey repository for genhub backend.

Provides credential selection and the atomic conditional credit decrement.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genhub.models.api_key import ApiKey, Provider
from genhub.models.timestamps import utcnow


class ApiKeyRepository:
    """Repository for ApiKey entities.

    Methods:
    - get_by_id: Retrieve credential by UUID
    - add: Persist new credential
    - select_for_job: Greedy highest-balance eligible credential
    - debit: Conditional decrement that refuses to overdraw
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, api_key_id: UUID) -> ApiKey | None:
        """Retrieve credential by UUID.

        Args:
            api_key_id: Credential's unique identifier

        Returns:
            ApiKey if found, None otherwise
        """
        result = await self.session.execute(select(ApiKey).where(ApiKey.id == api_key_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def add(self, api_key: ApiKey) -> ApiKey:
        """Persist new credential to database.

        Args:
            api_key: ApiKey entity to persist

        Returns:
            Persisted credential with generated ID
        """
        self.session.add(api_key)
        await self.session.flush()
        return api_key

    async def select_for_job(self, provider: Provider, cost: Decimal) -> ApiKey | None:
        """Select the eligible credential with the highest remaining balance.

        Query explanation:
        - WHERE provider = :provider AND is_active: Only live keys for the target backend
        - AND credits > :cost: Key must strictly cover the job
        - ORDER BY credits DESC LIMIT 1: Greedy highest balance

        Args:
            provider: Target provider
            cost: Credits the job will consume

        Returns:
            Selected credential, None if no key qualifies
        """
        result = await self.session.execute(
            select(ApiKey)
            .where(ApiKey.provider == provider.value)  # type: ignore[arg-type]
            .where(ApiKey.is_active == True)  # type: ignore[arg-type]  # noqa: E712
            .where(ApiKey.credits > cost)  # type: ignore[arg-type]
            .order_by(ApiKey.credits.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalars().first()

    async def debit(self, api_key_id: UUID, amount: Decimal) -> bool:
        """Atomically decrement a credential's credits.

        UPDATE api_keys SET credits = credits - :amount
        WHERE id = :id AND credits > :amount

        Two concurrent jobs cannot both drive the same key past its limit:
        the second decrement matches no row.

        Args:
            api_key_id: Credential to debit
            amount: Credits to subtract

        Returns:
            True if the row was debited, False if the key no longer covers the amount
        """
        result = await self.session.execute(
            update(ApiKey)
            .where(ApiKey.id == api_key_id)  # type: ignore[arg-type]
            .where(ApiKey.credits > amount)  # type: ignore[arg-type]
            .values(credits=ApiKey.credits - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]
