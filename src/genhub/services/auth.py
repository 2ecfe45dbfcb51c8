"""Session token verification against Supabase Auth."""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from genhub.services.exceptions import AuthError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None
    role: str = "user"


class SupabaseAuthClient:
    """Resolves a bearer session token to the calling user.

    Calls GET {supabase_url}/auth/v1/user; any non-200 answer means the
    token is missing, expired or revoked.
    """

    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.user_url = f"{supabase_url.rstrip('/')}/auth/v1/user"
        self.anon_key = anon_key
        self.client = client
        self.timeout = timeout

    async def get_user(self, token: str) -> AuthenticatedUser:
        """Verify a session token.

        Raises:
            AuthError: Token rejected or auth service unreachable
        """
        headers = {"apikey": self.anon_key, "Authorization": f"Bearer {token}"}
        try:
            if self.client is not None:
                response = await self.client.get(self.user_url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.user_url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("auth.unreachable", error=str(e))
            raise AuthError("Unauthorized") from e

        if response.status_code != 200:
            logger.info("auth.rejected", status_code=response.status_code)
            raise AuthError("Unauthorized")

        try:
            data = response.json()
        except ValueError as e:
            logger.warning("auth.invalid_response", body=response.text[:200])
            raise AuthError("Unauthorized") from e
        if not isinstance(data, dict):
            raise AuthError("Unauthorized")

        user_id = data.get("id")
        if not user_id:
            raise AuthError("Unauthorized")

        role = (data.get("app_metadata") or {}).get("role") or "user"
        return AuthenticatedUser(id=user_id, email=data.get("email"), role=role)
