"""GMI Cloud request-queue adapter (server2) for image generation."""

from typing import Any, Optional

import structlog

from genhub.services.exceptions import (
    ProviderFailure,
    ProviderNetworkError,
    SubmissionError,
)
from genhub.services.providers.base import (
    Completed,
    Failed,
    JobOutcome,
    NormalizedGenerationRequest,
    Pending,
    PollHandle,
    ProviderAdapter,
    dig,
)

logger = structlog.get_logger(__name__)

SIZE_PARAMETER_MODELS = frozenset({"seedream-4-0-250828"})

COMPLETED_STATUSES = frozenset({"completed", "succeeded", "success"})
FAILED_STATUSES = frozenset({"failed", "error"})

# Completion payloads vary by model; first non-empty match wins
URL_PATHS: tuple[tuple[Any, ...], ...] = (
    ("result", "images", 0, "url"),
    ("result", "image_url"),
    ("output", "images", 0, "url"),
    ("output", "url"),
    ("images", 0, "url"),
    ("url",),
)

BASE64_PATHS: tuple[tuple[Any, ...], ...] = (
    ("result", "images", 0, "b64_json"),
    ("output", "images", 0, "b64_json"),
)

NO_URL_MESSAGE = "Completed but no image URL in response"


def extract_result_url(payload: dict[str, Any], output_format: Optional[str] = None) -> Optional[str]:
    """Extract the output image from a completed GMI payload.

    Tries URL shapes in order, then base64 shapes, which are rebuilt into a
    data URL using the requested output format (png when absent).

    Returns:
        URL or data URL, None if the payload carries neither
    """
    for path in URL_PATHS:
        url = dig(payload, *path)
        if url:
            return url

    for path in BASE64_PATHS:
        b64 = dig(payload, *path)
        if b64:
            return f"data:image/{output_format or 'png'};base64,{b64}"

    return None


class GmiImageAdapter(ProviderAdapter):
    """GMI Cloud image models (gemini-3-pro-image-preview, seedream-4-0-250828)."""

    timeout_message = "GMI Cloud generation timed out"

    def __init__(
        self,
        queue_url: str = "https://console.gmicloud.ai/api/v1/ie/requestqueue/apikey/requests",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.queue_url = queue_url.rstrip("/")

    def auth_headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def build_body(self, request: NormalizedGenerationRequest) -> dict[str, Any]:
        """Translate a request into the GMI {model, payload} envelope."""
        payload: dict[str, Any] = {"prompt": request.prompt}

        if request.model_identifier in SIZE_PARAMETER_MODELS:
            if request.aspect_ratio:
                payload["size"] = request.aspect_ratio
            payload["watermark"] = False
            payload["response_format"] = "url"
        else:
            if request.aspect_ratio and request.aspect_ratio != "auto":
                payload["aspect_ratio"] = request.aspect_ratio
            if request.resolution:
                payload["image_size"] = request.resolution

        if request.reference_images:
            payload["image"] = list(request.reference_images)

        return {"model": request.model_identifier, "payload": payload}

    async def submit(self, request: NormalizedGenerationRequest, api_key: str) -> PollHandle:
        response = await self._send("POST", self.queue_url, api_key, json=self.build_body(request))
        if not response.is_success:
            logger.error(
                "gmi.submit_failed",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise SubmissionError(
                f"GMI Cloud submit error: {response.status_code} - {response.text}"
            )

        data = self._json_body(response, SubmissionError)
        request_id = data.get("id") or data.get("request_id")
        if not request_id:
            logger.error("gmi.submit_missing_request_id")
            raise SubmissionError("No request ID in GMI response")

        request_url = f"{self.queue_url}/{request_id}"
        logger.info("gmi.submitted", model=request.model_identifier, request_id=request_id)
        return PollHandle(
            request_id=str(request_id),
            status_url=request_url,
            response_url=request_url,
            output_format=request.output_format,
        )

    async def poll(self, handle: PollHandle, api_key: str) -> JobOutcome:
        response = await self._send("GET", handle.status_url or "", api_key)
        if not response.is_success:
            raise ProviderNetworkError(f"GMI Cloud poll error: {response.status_code}")

        data = self._json_body(response, ProviderNetworkError)
        status = (data.get("status") or "").lower()

        if status in COMPLETED_STATUSES:
            url = extract_result_url(data, handle.output_format)
            if url:
                return Completed(url)
            logger.error("gmi.completed_without_url", request_id=handle.request_id)
            return Failed(NO_URL_MESSAGE)

        if status in FAILED_STATUSES:
            return Failed(data.get("error") or data.get("message") or "Generation failed")

        return Pending(status or None)

    async def fetch_result(self, locator: str, api_key: str) -> str:
        try:
            response = await self._send("GET", locator, api_key)
        except ProviderNetworkError as e:
            raise ProviderFailure("Failed to get result") from e
        if not response.is_success:
            raise ProviderFailure("Failed to get result")

        url = extract_result_url(self._json_body(response, ProviderFailure))
        if not url:
            raise ProviderFailure(NO_URL_MESSAGE)
        return url
