"""CreditTransaction repository for genhub backend.

Append-only: rows are inserted and listed, never updated.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genhub.models.credit_transaction import CreditTransaction


class CreditTransactionRepository:
    """Repository for CreditTransaction audit rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a transaction row."""
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def list_by_user(self, user_id: str, limit: int = 100) -> list[CreditTransaction]:
        """Retrieve a user's transactions, newest first."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
