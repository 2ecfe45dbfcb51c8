"""Model catalog API endpoints.

- GET /api/models - List image or video models, optionally for one server
- GET /api/models/{model_id}/price - Credits for a given option set
"""

from typing import Any, Optional

from fastapi import APIRouter, Query

from genhub.models.api_key import Server
from genhub.models.generation import GenerationKind
from genhub.services.catalog import (
    ImageModel,
    VideoModel,
    calculate_image_price,
    calculate_video_price,
    get_image_model,
    get_video_model,
    image_models_for,
    video_models_for,
)
from genhub.services.exceptions import ModelNotFoundError

router = APIRouter(prefix="/api/models", tags=["models"])


def _image_model_dto(model: ImageModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "displayName": model.display_name,
        "server": model.server.value,
        "supportsTextToImage": model.supports_text_to_image,
        "supportsImageToImage": model.supports_image_to_image,
        "maxImages": model.max_images,
        "aspectRatios": list(model.aspect_ratios),
        "resolutions": list(model.resolutions),
        "outputFormats": list(model.output_formats),
        "defaultAspectRatio": model.default_aspect_ratio,
        "defaultResolution": model.default_resolution,
        "defaultOutputFormat": model.default_output_format,
        "pricing": [
            {"resolution": tier.resolution, "price": float(tier.price)} for tier in model.pricing
        ],
    }


def _video_model_dto(model: VideoModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "displayName": model.display_name,
        "server": model.server.value,
        "supportsTextToVideo": model.supports_text_to_video,
        "supportsImageToVideo": model.supports_image_to_video,
        "supportsFirstLastFrame": model.supports_first_last_frame,
        "supportsAudio": model.supports_audio,
        "supportsNegativePrompt": model.supports_negative_prompt,
        "supportsMotionControl": model.supports_motion_control,
        "maxImages": model.max_images,
        "maxVideoDuration": model.max_video_duration,
        "aspectRatios": list(model.aspect_ratios),
        "durations": list(model.durations),
        "resolutions": list(model.resolutions),
        "modes": list(model.modes),
        "defaultAspectRatio": model.default_aspect_ratio,
        "defaultDuration": model.default_duration,
        "defaultResolution": model.default_resolution,
        "defaultMode": model.default_mode,
        "pricing": [
            {
                "duration": tier.duration,
                "audioOn": tier.audio_on,
                "mode": tier.mode,
                "resolution": tier.resolution,
                "price": float(tier.price),
                "pricePerSecond": float(tier.price_per_second) if tier.price_per_second else None,
            }
            for tier in model.pricing
        ],
    }


@router.get("")
async def list_models(
    kind: GenerationKind = Query(GenerationKind.IMAGE),
    server: Optional[Server] = Query(None),
) -> list[dict[str, Any]]:
    """List catalog models with options, defaults and pricing tables."""
    if kind == GenerationKind.VIDEO:
        return [_video_model_dto(m) for m in video_models_for(server)]
    return [_image_model_dto(m) for m in image_models_for(server)]


@router.get("/{model_id}/price")
async def get_model_price(
    model_id: str,
    resolution: Optional[str] = Query(None),
    duration: Optional[int] = Query(None),
    audio: Optional[bool] = Query(None),
    mode: Optional[str] = Query(None),
    video_duration: Optional[int] = Query(None, alias="videoDuration"),
) -> dict[str, Any]:
    """Compute the credits a job with these options costs."""
    video_model = get_video_model(model_id)
    if video_model is not None:
        credits = calculate_video_price(
            video_model,
            duration=duration,
            audio_on=audio,
            mode=mode,
            resolution=resolution,
            video_duration=video_duration,
        )
        return {"modelId": video_model.id, "credits": float(credits)}

    image_model = get_image_model(model_id)
    if image_model is not None:
        return {
            "modelId": image_model.id,
            "credits": float(calculate_image_price(image_model, resolution)),
        }

    raise ModelNotFoundError("Model not found")
