"""Unit of Work for genhub backend.

One UnitOfWork is one database transaction: every repository it exposes
shares the same session, so a job row update, a ledger debit, a credential
debit and a transaction row either all commit or all roll back.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genhub.models.generation import GenerationKind, ImageGeneration, VideoGeneration
from genhub.repositories.api_key import ApiKeyRepository
from genhub.repositories.credit_transaction import CreditTransactionRepository
from genhub.repositories.generation import GenerationRepository
from genhub.repositories.user_credits import UserCreditsRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction scope over the generation, ledger and credential tables.

    Example:
        async with await uow_factory() as uow:
            ledger = await uow.user_credits.get_by_user(user_id)
            job = await uow.generations(GenerationKind.IMAGE).lock_by_id(job_id)
            job.mark_completed(url)
        # committed here; an exception inside the block rolls back instead
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.user_credits = UserCreditsRepository(session)
        self.api_keys = ApiKeyRepository(session)
        self.credit_transactions = CreditTransactionRepository(session)
        self.image_generations = GenerationRepository(session, ImageGeneration)
        self.video_generations = GenerationRepository(session, VideoGeneration)

    def generations(self, kind: GenerationKind) -> GenerationRepository:
        """Return the history repository for a media kind."""
        if kind == GenerationKind.VIDEO:
            return self.video_generations
        return self.image_generations

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit on clean exit, roll back otherwise, and release the session.

        Exceptions are never suppressed.
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Bind a session factory into an async UnitOfWork constructor.

    The orchestrator, API dependencies and CLI all receive this callable and
    open a fresh session per unit:

        uow_factory = create_uow_factory(setup_db_session(settings.database_url))
        async with await uow_factory() as uow:
            await uow.api_keys.add(api_key)
    """

    async def _create_uow():
        return UnitOfWork(session_factory())

    return _create_uow
