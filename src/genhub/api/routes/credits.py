"""Credit balance endpoint.

- GET /api/credits - Caller's balance and most recent transactions
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from genhub.api.dependencies import get_current_user, get_uow_factory
from genhub.api.routes.generations import CamelModel
from genhub.services.auth import AuthenticatedUser

router = APIRouter(prefix="/api/credits", tags=["credits"])


class TransactionDTO(CamelModel):
    id: UUID
    amount: float
    transaction_type: str
    description: Optional[str] = None
    created_at: datetime


class CreditsResponse(CamelModel):
    balance: float
    transactions: list[TransactionDTO]


@router.get("", response_model=CreditsResponse)
async def get_credits(
    limit: int = Query(20, ge=1, le=100),
    user: AuthenticatedUser = Depends(get_current_user),
    uow_factory=Depends(get_uow_factory),
) -> CreditsResponse:
    """Return the caller's balance (0 when no ledger row exists) and transactions."""
    async with await uow_factory() as uow:
        ledger = await uow.user_credits.get_by_user(user.id)
        transactions = await uow.credit_transactions.list_by_user(user.id, limit=limit)

    return CreditsResponse(
        balance=float(ledger.balance) if ledger else 0.0,
        transactions=[
            TransactionDTO(
                id=t.id,
                amount=float(t.amount),
                transaction_type=t.transaction_type,
                description=t.description,
                created_at=t.created_at,
            )
            for t in transactions
        ],
    )
