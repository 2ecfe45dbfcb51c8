"""fal.ai queue adapters (server1) for image and video generation."""

from typing import Any, Optional

import structlog

from genhub.models.generation import GenerationKind
from genhub.services.catalog import edit_variant_for
from genhub.services.exceptions import (
    ProviderFailure,
    ProviderNetworkError,
    SubmissionError,
    ValidationError,
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

# Resolution tokens accepted by the client, mapped to fal image_size values
RESOLUTION_SIZES = {
    "1K": "1024x1024",
    "2K": "2048x2048",
    "4K": "4096x4096",
}

MAX_VIDEO_REFERENCE_IMAGES = 2


class FalQueueAdapter(ProviderAdapter):
    """Shared fal.ai queue protocol.

    POST the payload to an endpoint, receive a request_id, then GET the status
    URL until status is COMPLETED or FAILED and GET the response URL for output.
    """

    def auth_headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Key {api_key}"}

    async def _submit_payload(
        self, endpoint: str, payload: dict[str, Any], api_key: str, output_format: Optional[str]
    ) -> PollHandle:
        response = await self._send("POST", endpoint, api_key, json=payload)
        if not response.is_success:
            logger.error(
                "fal.submit_failed",
                endpoint=endpoint,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise SubmissionError(self._submit_error_message(response.status_code, response.text))

        data = self._json_body(response, SubmissionError)
        request_id = data.get("request_id")
        if not request_id:
            logger.error("fal.submit_missing_request_id", endpoint=endpoint)
            raise SubmissionError("No request ID returned")

        status_url, response_url = self._handle_urls(endpoint, request_id, data)
        handle = PollHandle(
            request_id=request_id,
            status_url=status_url,
            response_url=response_url,
            output_format=output_format,
        )
        logger.info("fal.submitted", endpoint=endpoint, request_id=request_id)
        return handle

    def _handle_urls(
        self, endpoint: str, request_id: str, submit_payload: dict[str, Any]
    ) -> tuple[str, str]:
        """Status and result URLs, always derived from the submission endpoint."""
        return f"{endpoint}/requests/{request_id}/status", f"{endpoint}/requests/{request_id}"

    def _submit_error_message(self, status_code: int, body: str) -> str:
        return f"Fal.ai error: {status_code}"

    async def poll(self, handle: PollHandle, api_key: str) -> JobOutcome:
        response = await self._send("GET", handle.status_url or "", api_key)
        if not response.is_success:
            raise ProviderNetworkError(f"Status check failed: {response.status_code}")

        data = self._json_body(response, ProviderNetworkError)
        status = data.get("status")

        if status == "COMPLETED":
            inline_url = self._inline_result(data)
            if inline_url:
                return Completed(inline_url)
            try:
                return Completed(await self.fetch_result(handle.response_url or "", api_key))
            except ProviderFailure as e:
                return Failed(str(e))

        if status == "FAILED":
            return Failed(data.get("error") or "Generation failed")

        return Pending(status)

    def _inline_result(self, status_payload: dict[str, Any]) -> Optional[str]:
        return None


class FalImageAdapter(FalQueueAdapter):
    """fal.ai image models (nano-banana-pro, imagen, seedream)."""

    timeout_message = "Generation timeout"

    def __init__(self, base_url: str = "https://queue.fal.run", **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def build_endpoint(self, request: NormalizedGenerationRequest) -> tuple[str, str]:
        """Resolve (model path, endpoint URL), swapping in the edit variant for image input."""
        model_path = request.model_identifier
        if request.reference_images:
            model_path = edit_variant_for(request.model_identifier) or model_path
        return model_path, f"{self.base_url}/{model_path}"

    def build_payload(self, request: NormalizedGenerationRequest, model_path: str) -> dict[str, Any]:
        """Translate a request into the fal image payload.

        Seedream takes its aspect ratio tokens in image_size and has no
        resolution field. Other models take aspect_ratio plus a pixel size.
        """
        payload: dict[str, Any] = {"prompt": request.prompt}
        aspect_ratio = request.aspect_ratio

        if "bytedance/seedream" in model_path:
            if aspect_ratio and aspect_ratio != "auto":
                payload["image_size"] = aspect_ratio
        else:
            if aspect_ratio and aspect_ratio != "auto":
                payload["aspect_ratio"] = aspect_ratio
            if request.resolution:
                payload["image_size"] = RESOLUTION_SIZES.get(request.resolution, request.resolution)

        if request.output_format:
            payload["output_format"] = request.output_format

        if request.reference_images:
            payload["image_urls"] = list(request.reference_images)

        return payload

    async def submit(self, request: NormalizedGenerationRequest, api_key: str) -> PollHandle:
        model_path, endpoint = self.build_endpoint(request)
        payload = self.build_payload(request, model_path)
        return await self._submit_payload(endpoint, payload, api_key, request.output_format)

    def _handle_urls(
        self, endpoint: str, request_id: str, submit_payload: dict[str, Any]
    ) -> tuple[str, str]:
        # Image jobs follow the URLs fal hands back when present
        status_url, response_url = super()._handle_urls(endpoint, request_id, submit_payload)
        return (
            submit_payload.get("status_url") or status_url,
            submit_payload.get("response_url") or response_url,
        )

    def _inline_result(self, status_payload: dict[str, Any]) -> Optional[str]:
        return dig(status_payload, "response", "images", 0, "url") or dig(
            status_payload, "response", "image", "url"
        )

    async def fetch_result(self, locator: str, api_key: str) -> str:
        try:
            response = await self._send("GET", locator, api_key)
        except ProviderNetworkError as e:
            raise ProviderFailure("Failed to get result") from e
        if not response.is_success:
            logger.error("fal.result_failed", status_code=response.status_code)
            raise ProviderFailure("Failed to get result")

        data = self._json_body(response, ProviderFailure)
        url = dig(data, "images", 0, "url") or dig(data, "image", "url")
        if not url:
            raise ProviderFailure("No image URL in response")
        return url


class FalVideoAdapter(FalQueueAdapter):
    """fal.ai Veo 3.1 Fast video generation.

    The endpoint is chosen by the number of reference images:
    none for text-to-video, one for image-to-video, two for first/last frame.
    """

    def __init__(self, endpoint: str = "https://queue.fal.run/fal-ai/veo3.1/fast", **kwargs):
        super().__init__(**kwargs)
        self.endpoint = endpoint.rstrip("/")

    def build_endpoint(self, request: NormalizedGenerationRequest) -> str:
        count = len(request.reference_images)
        if count > MAX_VIDEO_REFERENCE_IMAGES:
            raise ValidationError(
                f"At most {MAX_VIDEO_REFERENCE_IMAGES} reference images are supported for video"
            )
        if count == 2:
            return f"{self.endpoint}/first-last-frame-to-video"
        if count == 1:
            return f"{self.endpoint}/image-to-video"
        return self.endpoint

    def build_payload(self, request: NormalizedGenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "duration": f"{request.duration_seconds}s",
            "resolution": request.resolution,
            "generate_audio": request.audio_enabled,
        }

        if request.aspect_ratio and request.aspect_ratio != "auto":
            payload["aspect_ratio"] = request.aspect_ratio

        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt

        images = request.reference_images
        if len(images) == 1:
            payload["image_url"] = images[0]
        elif len(images) == 2:
            payload["first_frame_image"] = images[0]
            payload["last_frame_image"] = images[1]

        return payload

    async def submit(self, request: NormalizedGenerationRequest, api_key: str) -> PollHandle:
        if request.kind != GenerationKind.VIDEO:
            raise ValidationError("Video adapter received a non-video request")
        endpoint = self.build_endpoint(request)
        payload = self.build_payload(request)
        return await self._submit_payload(endpoint, payload, api_key, None)

    def _submit_error_message(self, status_code: int, body: str) -> str:
        return f"fal.ai API error: {status_code} - {body}"

    async def fetch_result(self, locator: str, api_key: str) -> str:
        try:
            response = await self._send("GET", locator, api_key)
        except ProviderNetworkError as e:
            raise ProviderFailure(f"Failed to get result: {e}") from e
        if not response.is_success:
            raise ProviderFailure(f"Failed to get result: {response.text}")

        data = self._json_body(response, ProviderFailure)
        url = dig(data, "video", "url") or dig(data, "output", "video", "url")
        if not url:
            raise ProviderFailure("No video URL in response")
        return url
