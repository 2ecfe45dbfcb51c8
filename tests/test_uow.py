"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Multiple repository operations are atomic
"""

from decimal import Decimal

import pytest

from genhub.models.api_key import ApiKey, Provider
from genhub.models.generation import GenerationKind, ImageGeneration, VideoGeneration
from genhub.models.user_credits import UserCredits
from genhub.uow import UnitOfWork


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    """Changes made within the context persist after the context exits."""
    async with await uow_factory() as uow:
        ledger = await uow.user_credits.add(UserCredits(user_id="user-1", balance=Decimal("10")))
        ledger_id = ledger.id

    async with await uow_factory() as uow:
        found = await uow.user_credits.get_by_user("user-1")
        assert found is not None
        assert found.id == ledger_id
        assert found.balance == Decimal("10")


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    """If an exception is raised within the context:
    1. Changes are rolled back
    2. The exception propagates (not swallowed)
    """
    with pytest.raises(ValueError, match="boom"):
        async with await uow_factory() as uow:
            await uow.user_credits.add(UserCredits(user_id="user-1", balance=Decimal("10")))
            raise ValueError("boom")

    async with await uow_factory() as uow:
        assert await uow.user_credits.get_by_user("user-1") is None


@pytest.mark.asyncio
async def test_uow_multiple_operations_atomic(uow_factory):
    """A ledger debit and a credential debit commit or roll back together."""
    async with await uow_factory() as uow:
        await uow.user_credits.add(UserCredits(user_id="user-1", balance=Decimal("10")))
        key = await uow.api_keys.add(
            ApiKey(name="k", provider=Provider.FAL_AI.value, api_key="s", credits=Decimal("1"))
        )

    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            assert await uow.user_credits.debit("user-1", Decimal("0.5"), Decimal("10"))
            if not await uow.api_keys.debit(key.id, Decimal("1.5")):
                raise RuntimeError("credential debit refused")

    async with await uow_factory() as uow:
        ledger = await uow.user_credits.get_by_user("user-1")
        assert ledger.balance == Decimal("10")


@pytest.mark.asyncio
async def test_generations_routes_by_kind(session):
    uow = UnitOfWork(session)

    assert uow.generations(GenerationKind.IMAGE).model is ImageGeneration
    assert uow.generations(GenerationKind.VIDEO).model is VideoGeneration
