"""Repository layer for genhub backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from genhub.repositories.api_key import ApiKeyRepository
from genhub.repositories.credit_transaction import CreditTransactionRepository
from genhub.repositories.generation import GenerationRepository
from genhub.repositories.user_credits import UserCreditsRepository

__all__ = [
    "ApiKeyRepository",
    "CreditTransactionRepository",
    "GenerationRepository",
    "UserCreditsRepository",
]
