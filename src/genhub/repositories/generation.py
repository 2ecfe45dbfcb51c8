"""Generation repository for genhub backend.

One class serves both image_generations and video_generations; the concrete
table is chosen by the entity class passed in.
"""

from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genhub.models.generation import GenerationBase, GenerationStatus

GenerationT = TypeVar("GenerationT", bound=GenerationBase)


class GenerationRepository(Generic[GenerationT]):
    """Repository for generation history rows.

    Methods include the reconciliation sweep query using FOR UPDATE SKIP LOCKED,
    which keeps concurrent sweepers from loading the same batch at the same
    moment. The lock ends with that read; lock_by_id guards finalization.
    """

    def __init__(self, session: AsyncSession, model: type[GenerationT]):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
            model: ImageGeneration or VideoGeneration
        """
        self.session = session
        self.model = model

    async def add(self, generation: GenerationT) -> GenerationT:
        """Persist new generation row.

        Args:
            generation: Entity to persist

        Returns:
            Persisted row with generated ID
        """
        self.session.add(generation)
        await self.session.flush()
        return generation

    async def get_by_id(self, generation_id: UUID) -> GenerationT | None:
        """Retrieve generation row by UUID.

        Args:
            generation_id: Job identifier

        Returns:
            Row if found, None otherwise
        """
        result = await self.session.execute(
            select(self.model).where(self.model.id == generation_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def lock_by_id(self, generation_id: UUID) -> GenerationT | None:
        """Retrieve generation row with FOR UPDATE, serializing concurrent finalizers.

        Args:
            generation_id: Job identifier

        Returns:
            Locked row if found, None otherwise
        """
        result = await self.session.execute(
            select(self.model)
            .where(self.model.id == generation_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, generation_id: UUID, user_id: str) -> GenerationT | None:
        """Retrieve generation row only if owned by user.

        Args:
            generation_id: Job identifier
            user_id: Owner

        Returns:
            Row if found and owned by user, None otherwise
        """
        result = await self.session.execute(
            select(self.model)
            .where(self.model.id == generation_id)  # type: ignore[arg-type]
            .where(self.model.user_id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_by_user(self, user_id: str, limit: int = 50) -> list[GenerationT]:
        """Retrieve a user's generations, newest first."""
        result = await self.session.execute(
            select(self.model)
            .where(self.model.user_id == user_id)  # type: ignore[arg-type]
            .order_by(self.model.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_pending_detached(self, limit: int = 20) -> list[GenerationT]:
        """Retrieve detached pending jobs with row-level locking.

        Query explanation:
        - WHERE status = 'pending' AND detached: Submitted without a waiting caller
        - AND request_id IS NOT NULL: Submission recorded a poll handle
        - ORDER BY submitted_at ASC: Oldest first
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Args:
            limit: Maximum number of rows to retrieve (default: 20)

        Returns:
            Rows ordered oldest first
        """
        result = await self.session.execute(
            select(self.model)
            .where(self.model.status == GenerationStatus.PENDING.value)  # type: ignore[arg-type]
            .where(self.model.detached == True)  # type: ignore[arg-type]  # noqa: E712
            .where(self.model.request_id.is_not(None))  # type: ignore[union-attr]
            .order_by(self.model.submitted_at.asc())  # type: ignore[union-attr]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())
