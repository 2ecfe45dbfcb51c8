"""CreditTransaction entity - Immutable audit row for credit movements."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from genhub.models.timestamps import UTCDateTime, utcnow


class CreditTransaction(SQLModel, table=True):
    """CreditTransaction records one signed credit movement (negative for debits).

    Written once per successful generation, never updated or deleted.
    """

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=64, index=True)
    api_key_id: Optional[UUID] = Field(default=None, foreign_key="api_keys.id")
    image_generation_id: Optional[UUID] = Field(default=None, foreign_key="image_generations.id")
    video_generation_id: Optional[UUID] = Field(default=None, foreign_key="video_generations.id")
    amount: Decimal = Field(max_digits=12, decimal_places=4)
    transaction_type: str = Field(max_length=50)  # "image_generation" or "video_generation"
    description: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
