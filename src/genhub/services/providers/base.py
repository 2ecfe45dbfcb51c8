"""Provider adapter contract and the shared polling loop.

Every provider exposes the same asynchronous job lifecycle:
submit a job, check its status until terminal, fetch the result locator.
Adapters translate a NormalizedGenerationRequest into provider wire format
and translate provider responses back into a JobOutcome.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import structlog

from genhub.models.generation import GenerationKind
from genhub.services.exceptions import (
    PollTimeoutError,
    ProviderFailure,
    ProviderNetworkError,
    TransientError,
)

logger = structlog.get_logger(__name__)


@dataclass
class NormalizedGenerationRequest:
    """Provider-agnostic description of one generation job."""

    kind: GenerationKind
    prompt: str
    model_identifier: str
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    duration_seconds: Optional[int] = None
    audio_enabled: bool = False
    output_format: Optional[str] = None
    reference_images: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PollHandle:
    """Everything needed to check a submitted job later, possibly from another process."""

    request_id: str
    status_url: Optional[str] = None
    response_url: Optional[str] = None
    output_format: Optional[str] = None


@dataclass(frozen=True)
class Pending:
    status: Optional[str] = None


@dataclass(frozen=True)
class Completed:
    url: str


@dataclass(frozen=True)
class Failed:
    reason: str


JobOutcome = Union[Pending, Completed, Failed]


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    Subclasses implement submit/poll/fetch_result and the provider auth header.
    HTTP goes through a shared httpx.AsyncClient when one is injected, otherwise
    a short-lived client is opened per request.
    """

    timeout_message = "Generation timed out"

    def __init__(
        self,
        poll_interval_seconds: float,
        max_poll_attempts: int,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        """Initialize adapter.

        Args:
            poll_interval_seconds: Fixed wait before each status check
            max_poll_attempts: Status checks allowed before giving up
            client: Shared HTTP client (optional)
            timeout: Per-request timeout when no client is injected
        """
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self.client = client
        self.timeout = timeout

    @abstractmethod
    def auth_headers(self, api_key: str) -> dict[str, str]:
        """Authorization headers for this provider."""

    @abstractmethod
    async def submit(self, request: NormalizedGenerationRequest, api_key: str) -> PollHandle:
        """Start a job.

        Raises:
            SubmissionError: Non-2xx response or no job identifier
            ValidationError: Request cannot be expressed for this provider
        """

    @abstractmethod
    async def poll(self, handle: PollHandle, api_key: str) -> JobOutcome:
        """Check job status once without blocking.

        Raises:
            ProviderNetworkError: Status endpoint unreachable or non-2xx
        """

    @abstractmethod
    async def fetch_result(self, locator: str, api_key: str) -> str:
        """Retrieve the output URL for a completed job.

        Raises:
            ProviderFailure: Result unavailable or missing a media URL
        """

    async def _send(
        self,
        method: str,
        url: str,
        api_key: str,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one request to the provider.

        Raises:
            ProviderNetworkError: Timeout or connection failure
        """
        headers = self.auth_headers(api_key)
        if json is not None:
            headers["Content-Type"] = "application/json"

        try:
            if self.client is not None:
                return await self.client.request(method, url, headers=headers, json=json)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as e:
            raise ProviderNetworkError(f"Request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderNetworkError(f"Network error: {e}") from e

    @staticmethod
    def _json_body(response: httpx.Response, error: type[Exception]) -> dict[str, Any]:
        """Decode a provider response that must be a JSON object.

        Raises:
            error: Body is not JSON, or is JSON but not an object
        """
        try:
            data = response.json()
        except ValueError as e:
            logger.error(
                "provider.invalid_json",
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise error(f"Invalid JSON response from provider: {response.status_code}") from e
        if not isinstance(data, dict):
            raise error(
                f"Unexpected response from provider: expected an object, got {type(data).__name__}"
            )
        return data


def dig(payload: Any, *path: Union[str, int]) -> Any:
    """Follow a key/index path through nested JSON, returning None on any miss.

    Example:
        dig(data, "result", "images", 0, "url")
    """
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


SleepFn = Callable[[float], Awaitable[Any]]


async def poll_until_terminal(
    adapter: ProviderAdapter,
    handle: PollHandle,
    api_key: str,
    sleep: SleepFn = asyncio.sleep,
) -> str:
    """Drive a submitted job to a terminal outcome.

    Waits the adapter's fixed interval before every status check. Status check
    errors count as an attempt and polling continues.

    Returns:
        Output media URL

    Raises:
        ProviderFailure: Provider reported the job failed
        PollTimeoutError: No terminal status within max_poll_attempts
    """
    for attempt in range(1, adapter.max_poll_attempts + 1):
        await sleep(adapter.poll_interval_seconds)

        try:
            outcome = await adapter.poll(handle, api_key)
        except TransientError as e:
            logger.warning(
                "generation.poll_error",
                request_id=handle.request_id,
                attempt=attempt,
                error=str(e),
            )
            continue

        if isinstance(outcome, Completed):
            logger.info("generation.poll_completed", request_id=handle.request_id, attempt=attempt)
            return outcome.url

        if isinstance(outcome, Failed):
            logger.info(
                "generation.poll_failed",
                request_id=handle.request_id,
                attempt=attempt,
                reason=outcome.reason,
            )
            raise ProviderFailure(outcome.reason)

        logger.debug(
            "generation.poll",
            request_id=handle.request_id,
            attempt=attempt,
            status=outcome.status,
        )

    logger.warning(
        "generation.poll_timeout",
        request_id=handle.request_id,
        attempts=adapter.max_poll_attempts,
    )
    raise PollTimeoutError(adapter.timeout_message)
