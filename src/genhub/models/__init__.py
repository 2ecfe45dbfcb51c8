"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genhub.models.api_key import ApiKey, Provider, Server
from genhub.models.credit_transaction import CreditTransaction
from genhub.models.generation import (
    GENERATION_MODELS,
    GenerationBase,
    GenerationKind,
    GenerationStatus,
    ImageGeneration,
    InvalidStateTransition,
    VideoGeneration,
)
from genhub.models.user_credits import UserCredits

__all__ = [
    "ApiKey",
    "Provider",
    "Server",
    "CreditTransaction",
    "UserCredits",
    "GenerationBase",
    "GenerationKind",
    "GenerationStatus",
    "ImageGeneration",
    "VideoGeneration",
    "GENERATION_MODELS",
    "InvalidStateTransition",
]
