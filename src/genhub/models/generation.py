"""Generation entities - Job history rows for image and video generation."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from genhub.models.timestamps import UTCDateTime, utcnow


class GenerationKind(str, Enum):
    """Media kind produced by a generation job."""

    IMAGE = "image"
    VIDEO = "video"


class GenerationStatus(str, Enum):
    """Generation job lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid generation state transition."""

    pass


class GenerationBase(SQLModel):
    """Columns shared by the per-kind generation tables.

    A row is created in pending status before the provider call and updated
    in place exactly once when the job reaches a terminal state.
    """

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=64, index=True)
    api_key_id: Optional[UUID] = Field(default=None, foreign_key="api_keys.id")

    prompt: str
    negative_prompt: Optional[str] = Field(default=None)
    aspect_ratio: Optional[str] = Field(default=None, max_length=50)
    resolution: Optional[str] = Field(default=None, max_length=50)
    output_format: Optional[str] = Field(default=None, max_length=20)
    duration_seconds: Optional[int] = Field(default=None)
    audio_enabled: Optional[bool] = Field(default=None)
    reference_image_count: int = Field(default=0)
    model_id: str = Field(max_length=255)
    model_name: Optional[str] = Field(default=None, max_length=255)
    server: str = Field(max_length=20)  # "server1" or "server2"

    status: str = Field(default=GenerationStatus.PENDING.value, max_length=20, index=True)
    credits_used: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=4)
    output_url: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)

    # Provider poll handle, recorded after submission
    request_id: Optional[str] = Field(default=None, max_length=255)
    status_url: Optional[str] = Field(default=None)
    response_url: Optional[str] = Field(default=None)
    detached: bool = Field(default=False, index=True)
    submitted_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status != GenerationStatus.PENDING.value

    def attach_api_key(self, api_key_id: UUID) -> None:
        """Record the credential selected for this job.

        Raises:
            InvalidStateTransition: If the job is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot attach credential to {self.status} generation. Job must be pending."
            )
        self.api_key_id = api_key_id
        self.updated_at = utcnow()

    def record_submission(
        self,
        request_id: str,
        status_url: Optional[str],
        response_url: Optional[str],
        detached: bool = False,
    ) -> None:
        """Store the provider poll handle returned by submission."""
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot record submission for {self.status} generation. Job must be pending."
            )
        self.request_id = request_id
        self.status_url = status_url
        self.response_url = response_url
        self.detached = detached
        self.submitted_at = utcnow()
        self.updated_at = self.submitted_at

    def mark_completed(self, output_url: str) -> None:
        """Transition from pending to completed.

        Raises:
            InvalidStateTransition: If current status is not pending
            ValueError: If output_url is empty
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status}. Generation must be in pending state."
            )
        if not output_url:
            raise ValueError("output_url is required")
        self.output_url = output_url
        self.status = GenerationStatus.COMPLETED.value
        self.completed_at = utcnow()
        self.updated_at = self.completed_at

    def mark_failed(self, error_message: str) -> None:
        """Transition from pending to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(f"Cannot mark failed from terminal state {self.status}.")
        self.error_message = error_message or "Generation failed"
        self.status = GenerationStatus.FAILED.value
        self.completed_at = utcnow()
        self.updated_at = self.completed_at


class ImageGeneration(GenerationBase, table=True):
    """Image generation job history row."""

    __tablename__ = "image_generations"  # type: ignore[assignment]


class VideoGeneration(GenerationBase, table=True):
    """Video generation job history row."""

    __tablename__ = "video_generations"  # type: ignore[assignment]


GENERATION_MODELS: dict[GenerationKind, type[GenerationBase]] = {
    GenerationKind.IMAGE: ImageGeneration,
    GenerationKind.VIDEO: VideoGeneration,
}
