"""UserCredits repository for genhub backend.

Provides balance lookup and the optimistic (compare-and-set) ledger debit.
"""

from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genhub.models.timestamps import utcnow
from genhub.models.user_credits import UserCredits


class UserCreditsRepository:
    """Repository for UserCredits entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_user(self, user_id: str) -> UserCredits | None:
        """Retrieve a user's ledger row.

        Uses populate_existing so a retried reconciliation reads the committed
        balance instead of a cached one.

        Args:
            user_id: Auth service user identifier

        Returns:
            UserCredits if found, None otherwise
        """
        result = await self.session.execute(
            select(UserCredits)
            .where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, credits: UserCredits) -> UserCredits:
        """Persist new ledger row.

        Args:
            credits: UserCredits entity to persist

        Returns:
            Persisted ledger row
        """
        self.session.add(credits)
        await self.session.flush()
        return credits

    async def debit(self, user_id: str, amount: Decimal, expected_balance: Decimal) -> bool:
        """Debit a balance only if it still equals the value read earlier.

        UPDATE user_credits SET balance = :expected - :amount
        WHERE user_id = :user_id AND balance = :expected

        Args:
            user_id: Ledger owner
            amount: Credits to subtract
            expected_balance: Balance observed by the caller

        Returns:
            True if debited, False if the balance changed concurrently
        """
        result = await self.session.execute(
            update(UserCredits)
            .where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
            .where(UserCredits.balance == expected_balance)  # type: ignore[arg-type]
            .values(balance=expected_balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]
