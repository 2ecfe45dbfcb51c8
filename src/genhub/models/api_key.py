"""ApiKey entity - Provider credential with a remaining-credits balance."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from genhub.models.timestamps import UTCDateTime, utcnow


class Provider(str, Enum):
    """External generation backend a credential is bound to."""

    FAL_AI = "fal_ai"
    GMICLOUD = "gmicloud"


class Server(str, Enum):
    """Client-facing name of a provider."""

    SERVER1 = "server1"
    SERVER2 = "server2"

    @property
    def provider(self) -> Provider:
        """Provider backing this server (matches api_keys.provider values)."""
        return Provider.FAL_AI if self is Server.SERVER1 else Provider.GMICLOUD


class ApiKey(SQLModel, table=True):
    """ApiKey is a reusable provider secret metered by a credits balance.

    A key is eligible for a job only while active and holding strictly more
    credits than the job costs. Credits are debited only after a job succeeds.
    """

    __tablename__ = "api_keys"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255)
    provider: str = Field(max_length=50, index=True)  # Provider value
    api_key: str = Field(max_length=1024)
    credits: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=4)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
