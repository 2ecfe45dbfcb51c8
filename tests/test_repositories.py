"""Repository layer tests for genhub backend.

Tests focus on the queries that carry business rules:
- Credential selection (active, provider, strict coverage, highest balance)
- Conditional credential debit that refuses to overdraw
- Optimistic ledger debit keyed on the observed balance
- Detached pending sweep query

Simple CRUD operations are not tested (trust SQLAlchemy).

Note: FOR UPDATE SKIP LOCKED is a no-op on SQLite; row locking and exact
NUMERIC arithmetic are covered in test_postgres_ledger.py.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from genhub.models.api_key import ApiKey, Provider
from genhub.models.credit_transaction import CreditTransaction
from genhub.models.generation import ImageGeneration
from genhub.models.timestamps import utcnow
from genhub.models.user_credits import UserCredits
from genhub.repositories.api_key import ApiKeyRepository
from genhub.repositories.credit_transaction import CreditTransactionRepository
from genhub.repositories.generation import GenerationRepository
from genhub.repositories.user_credits import UserCreditsRepository


def api_key(credits: str, provider: Provider = Provider.FAL_AI, is_active: bool = True, name="k"):
    return ApiKey(
        name=name,
        provider=provider.value,
        api_key=f"secret-{name}",
        credits=Decimal(credits),
        is_active=is_active,
    )


@pytest.mark.asyncio
async def test_select_for_job_prefers_highest_balance(session):
    """Scenario: three fal keys, one GMI key, one inactive key.

    The active fal key with the most credits wins.
    """
    repo = ApiKeyRepository(session)
    await repo.add(api_key("5", name="five"))
    await repo.add(api_key("10", name="ten"))
    await repo.add(api_key("100", is_active=False, name="inactive"))
    await repo.add(api_key("100", provider=Provider.GMICLOUD, name="gmi"))

    selected = await repo.select_for_job(Provider.FAL_AI, Decimal("1.5"))

    assert selected is not None
    assert selected.name == "ten"


@pytest.mark.asyncio
async def test_select_for_job_requires_strictly_more_credits(session):
    repo = ApiKeyRepository(session)
    await repo.add(api_key("1.5"))

    assert await repo.select_for_job(Provider.FAL_AI, Decimal("1.5")) is None
    assert await repo.select_for_job(Provider.FAL_AI, Decimal("1")) is not None


@pytest.mark.asyncio
async def test_api_key_debit_refuses_overdraw(session):
    """debit() is a conditional UPDATE: the second job cannot drain the key past zero."""
    repo = ApiKeyRepository(session)
    key = await repo.add(api_key("2"))
    await session.commit()

    assert await repo.debit(key.id, Decimal("1.5")) is True
    assert await repo.debit(key.id, Decimal("1.5")) is False
    await session.commit()

    session.expire_all()
    refreshed = await repo.get_by_id(key.id)
    assert refreshed.credits == Decimal("0.5")


@pytest.mark.asyncio
async def test_ledger_debit_compares_expected_balance(session):
    repo = UserCreditsRepository(session)
    await repo.add(UserCredits(user_id="user-1", balance=Decimal("10")))
    await session.commit()

    assert await repo.debit("user-1", Decimal("1.5"), expected_balance=Decimal("9")) is False
    assert await repo.debit("user-1", Decimal("1.5"), expected_balance=Decimal("10")) is True
    await session.commit()

    ledger = await repo.get_by_user("user-1")
    assert ledger.balance == Decimal("8.5")


@pytest.mark.asyncio
async def test_get_pending_detached_filters_and_orders(session):
    """Only detached pending rows with a recorded poll handle, oldest submission first."""
    repo = GenerationRepository(session, ImageGeneration)
    now = utcnow()

    def job(prompt: str) -> ImageGeneration:
        return ImageGeneration(user_id="u", prompt=prompt, model_id="m", server="server1")

    newer = job("newer")
    newer.record_submission("r-new", "s", "r", detached=True)
    newer.submitted_at = now

    older = job("older")
    older.record_submission("r-old", "s", "r", detached=True)
    older.submitted_at = now - timedelta(minutes=5)

    attached = job("attached")
    attached.record_submission("r-att", "s", "r", detached=False)

    finished = job("finished")
    finished.record_submission("r-done", "s", "r", detached=True)
    finished.mark_completed("https://cdn/x.png")

    never_submitted = job("never submitted")
    never_submitted.detached = True

    for row in (newer, older, attached, finished, never_submitted):
        await repo.add(row)

    rows = await repo.get_pending_detached(limit=10)

    assert [row.prompt for row in rows] == ["older", "newer"]


@pytest.mark.asyncio
async def test_transactions_listed_newest_first(session):
    repo = CreditTransactionRepository(session)
    now = utcnow()
    for offset, amount in ((2, "-1"), (1, "-0.5"), (0, "-0.25")):
        await repo.add(
            CreditTransaction(
                user_id="user-1",
                amount=Decimal(amount),
                transaction_type="image_generation",
                created_at=now - timedelta(minutes=offset),
            )
        )
    await repo.add(
        CreditTransaction(user_id="user-2", amount=Decimal("-1"), transaction_type="image_generation")
    )

    rows = await repo.list_by_user("user-1", limit=2)

    assert [row.amount for row in rows] == [Decimal("-0.25"), Decimal("-0.5")]


@pytest.mark.asyncio
async def test_timestamps_round_trip_as_aware_utc(uow_factory):
    """Timestamps are written and read back timezone-aware, naive input taken as UTC."""
    job = ImageGeneration(user_id="u", prompt="p", model_id="m", server="server1")
    job.record_submission("r-1", "s", "r", detached=True)
    job.created_at = datetime(2026, 1, 2, 3, 4, 5)
    async with await uow_factory() as uow:
        await uow.image_generations.add(job)

    async with await uow_factory() as uow:
        stored = await uow.image_generations.get_by_id(job.id)

    assert stored.created_at == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert stored.submitted_at.utcoffset() == timedelta(0)
    assert stored.updated_at.tzinfo is not None
