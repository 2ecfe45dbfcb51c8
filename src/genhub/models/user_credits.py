"""UserCredits entity - Per-user credit balance."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from genhub.models.timestamps import UTCDateTime, utcnow


class UserCredits(SQLModel, table=True):
    """UserCredits holds the spendable balance of one user."""

    __tablename__ = "user_credits"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=64, unique=True, index=True)
    balance: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=4)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
