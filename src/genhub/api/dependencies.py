"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Unit of Work access
- Session token authentication
- Orchestrator access
"""

from typing import Annotated, Callable

from fastapi import Depends, Header, Request

from genhub.services.auth import AuthenticatedUser, SupabaseAuthClient
from genhub.services.exceptions import AuthError
from genhub.services.orchestrator import GenerationOrchestrator
from genhub.uow import UnitOfWork


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.user_credits.get_by_user(user_id)
    """
    return request.app.state.uow_factory


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Get the GenerationOrchestrator built during app lifespan."""
    return request.app.state.orchestrator


def get_auth_client(request: Request) -> SupabaseAuthClient:
    """Get the session token verifier built during app lifespan."""
    return request.app.state.auth_client


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> AuthenticatedUser:
    """Resolve the caller from the Authorization: Bearer <session token> header.

    Raises:
        AuthError: Header missing or token rejected by the auth service
    """
    if not authorization:
        raise AuthError("Unauthorized")

    token = authorization.removeprefix("Bearer ").strip()
    if not token:
        raise AuthError("Unauthorized")

    return await auth_client.get_user(token)
