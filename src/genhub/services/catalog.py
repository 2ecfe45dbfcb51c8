"""Model catalog: capabilities, request options and pricing for every offered model.

Prices are in credits. The orchestrator charges whatever cost the caller sends;
the catalog lets clients compute that cost consistently.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from genhub.models.api_key import Server


@dataclass(frozen=True)
class ImagePrice:
    price: Decimal
    resolution: Optional[str] = None


@dataclass(frozen=True)
class VideoPrice:
    price: Decimal
    duration: Optional[int] = None
    audio_on: Optional[bool] = None
    mode: Optional[str] = None
    resolution: Optional[str] = None
    price_per_second: Optional[Decimal] = None


@dataclass(frozen=True)
class ImageModel:
    """Image model entry.

    `name` is the provider model identifier sent on the wire.
    """

    id: str
    name: str
    display_name: str
    server: Server
    supports_text_to_image: bool
    supports_image_to_image: bool
    max_images: int
    aspect_ratios: tuple[str, ...]
    resolutions: tuple[str, ...]
    output_formats: tuple[str, ...]
    default_aspect_ratio: str
    default_resolution: str
    default_output_format: str
    pricing: tuple[ImagePrice, ...]
    edit_variant: Optional[str] = None
    add_auto_for_image_mode: bool = False


@dataclass(frozen=True)
class VideoModel:
    """Video model entry."""

    id: str
    name: str
    display_name: str
    server: Server
    supports_text_to_video: bool
    supports_image_to_video: bool
    supports_first_last_frame: bool
    supports_audio: bool
    supports_negative_prompt: bool
    max_images: int
    aspect_ratios: tuple[str, ...]
    durations: tuple[int, ...]
    resolutions: tuple[str, ...]
    modes: tuple[str, ...]
    default_aspect_ratio: str
    default_duration: int
    default_resolution: str
    default_mode: str
    pricing: tuple[VideoPrice, ...]
    supports_motion_control: bool = False
    max_video_duration: Optional[int] = None


def _d(value: str) -> Decimal:
    return Decimal(value)


_VEO_PRICING = (
    VideoPrice(duration=4, audio_on=False, price=_d("0.4")),
    VideoPrice(duration=6, audio_on=False, price=_d("0.6")),
    VideoPrice(duration=8, audio_on=False, price=_d("0.8")),
    VideoPrice(duration=4, audio_on=True, price=_d("0.6")),
    VideoPrice(duration=6, audio_on=True, price=_d("0.9")),
    VideoPrice(duration=8, audio_on=True, price=_d("1.2")),
)

_SORA_PRICING = (
    VideoPrice(duration=4, price=_d("0.4")),
    VideoPrice(duration=8, price=_d("0.8")),
    VideoPrice(duration=12, price=_d("1.2")),
)

_NANO_BANANA_PRICING = (
    ImagePrice(resolution="1K", price=_d("0.15")),
    ImagePrice(resolution="2K", price=_d("0.15")),
    ImagePrice(resolution="4K", price=_d("0.3")),
)


IMAGE_MODELS: tuple[ImageModel, ...] = (
    ImageModel(
        id="server1-nano-banana-pro",
        name="fal-ai/nano-banana-pro",
        display_name="Nano Banana Pro",
        server=Server.SERVER1,
        supports_text_to_image=True,
        supports_image_to_image=True,
        max_images=14,
        aspect_ratios=("21:9", "16:9", "3:2", "4:3", "5:4", "1:1", "4:5", "3:4", "2:3", "9:16"),
        resolutions=("1K", "2K", "4K"),
        output_formats=("png", "jpeg", "webp"),
        default_aspect_ratio="1:1",
        default_resolution="1K",
        default_output_format="png",
        pricing=_NANO_BANANA_PRICING,
        edit_variant="fal-ai/nano-banana-pro/edit",
        add_auto_for_image_mode=True,
    ),
    ImageModel(
        id="server1-imagen3",
        name="fal-ai/imagen3",
        display_name="Imagen 3",
        server=Server.SERVER1,
        supports_text_to_image=True,
        supports_image_to_image=False,
        max_images=0,
        aspect_ratios=("1:1", "16:9", "9:16", "3:4", "4:3"),
        resolutions=(),
        output_formats=(),
        default_aspect_ratio="1:1",
        default_resolution="",
        default_output_format="",
        pricing=(ImagePrice(price=_d("0.05")),),
    ),
    ImageModel(
        id="server1-imagen4-ultra",
        name="fal-ai/imagen4/preview/ultra",
        display_name="Imagen 4 Ultra",
        server=Server.SERVER1,
        supports_text_to_image=True,
        supports_image_to_image=False,
        max_images=0,
        aspect_ratios=("1:1", "16:9", "9:16", "3:4", "4:3"),
        resolutions=("1K", "2K"),
        output_formats=("png", "jpeg", "webp"),
        default_aspect_ratio="1:1",
        default_resolution="1K",
        default_output_format="png",
        pricing=(ImagePrice(price=_d("0.06")),),
    ),
    ImageModel(
        id="server1-seedream-4.5",
        name="fal-ai/bytedance/seedream/v4.5/text-to-image",
        display_name="Seedream 4.5",
        server=Server.SERVER1,
        supports_text_to_image=True,
        supports_image_to_image=True,
        max_images=20,
        aspect_ratios=(
            "square_hd",
            "square",
            "portrait_4_3",
            "portrait_16_9",
            "landscape_4_3",
            "landscape_16_9",
            "auto_2K",
            "auto_4K",
        ),
        resolutions=(),
        output_formats=(),
        default_aspect_ratio="square_hd",
        default_resolution="",
        default_output_format="",
        pricing=(ImagePrice(price=_d("0.04")),),
        edit_variant="fal-ai/bytedance/seedream/v4.5/edit",
    ),
    ImageModel(
        id="server2-nano-banana-pro",
        name="gemini-3-pro-image-preview",
        display_name="Nano Banana Pro",
        server=Server.SERVER2,
        supports_text_to_image=True,
        supports_image_to_image=True,
        max_images=5,
        aspect_ratios=("1:1", "4:5", "5:4", "3:4", "4:3", "9:16", "16:9", "21:9"),
        resolutions=("1K", "2K", "4K"),
        output_formats=("png", "jpeg", "webp"),
        default_aspect_ratio="1:1",
        default_resolution="1K",
        default_output_format="png",
        pricing=_NANO_BANANA_PRICING,
        add_auto_for_image_mode=True,
    ),
    ImageModel(
        id="server2-seedream-4",
        name="seedream-4-0-250828",
        display_name="Seedream 4",
        server=Server.SERVER2,
        supports_text_to_image=True,
        supports_image_to_image=True,
        max_images=10,
        aspect_ratios=(
            "1K",
            "2K",
            "4K",
            "1024x1024(1:1)",
            "1440x2560(9:16)",
            "1664x2496(2:3)",
            "1728x2304(3:4)",
            "2048x2048(1:1)",
            "2304x1728(4:3)",
            "2496x1664(3:2)",
            "2560x1440(16:9)",
            "3024x1296(21:9)",
            "4096x4096(1:1)",
        ),
        resolutions=(),
        output_formats=(),
        default_aspect_ratio="1024x1024(1:1)",
        default_resolution="",
        default_output_format="",
        pricing=(ImagePrice(price=_d("0.05")),),
    ),
)


VIDEO_MODELS: tuple[VideoModel, ...] = (
    VideoModel(
        id="veo-3.1-fast-s1",
        name="veo-3.1-fast",
        display_name="Google Veo 3.1 Fast",
        server=Server.SERVER1,
        supports_text_to_video=True,
        supports_image_to_video=True,
        supports_first_last_frame=True,
        supports_audio=True,
        supports_negative_prompt=False,
        max_images=2,
        aspect_ratios=("auto", "16:9", "9:16"),
        durations=(4, 6, 8),
        resolutions=("720p", "1080p"),
        modes=("standard",),
        default_aspect_ratio="auto",
        default_duration=8,
        default_resolution="1080p",
        default_mode="standard",
        pricing=_VEO_PRICING,
    ),
    VideoModel(
        id="sora-2-s1",
        name="sora-2",
        display_name="Sora 2",
        server=Server.SERVER1,
        supports_text_to_video=True,
        supports_image_to_video=True,
        supports_first_last_frame=False,
        supports_audio=False,
        supports_negative_prompt=False,
        max_images=1,
        aspect_ratios=("16:9", "9:16"),
        durations=(4, 8, 12),
        resolutions=("720p",),
        modes=("standard",),
        default_aspect_ratio="16:9",
        default_duration=8,
        default_resolution="720p",
        default_mode="standard",
        pricing=_SORA_PRICING,
    ),
    VideoModel(
        id="kling-v2.6-s1",
        name="kling-v2.6",
        display_name="Kling v2.6",
        server=Server.SERVER1,
        supports_text_to_video=True,
        supports_image_to_video=True,
        supports_first_last_frame=False,
        supports_audio=True,
        supports_negative_prompt=True,
        max_images=2,
        aspect_ratios=("9:16", "16:9", "1:1"),
        durations=(5, 10),
        resolutions=("720p",),
        modes=("pro",),
        default_aspect_ratio="16:9",
        default_duration=5,
        default_resolution="720p",
        default_mode="pro",
        pricing=(
            VideoPrice(duration=5, audio_on=False, price=_d("0.35")),
            VideoPrice(duration=5, audio_on=True, price=_d("0.7")),
            VideoPrice(duration=10, audio_on=False, price=_d("0.7")),
            VideoPrice(duration=10, audio_on=True, price=_d("1.4")),
        ),
    ),
    VideoModel(
        id="kling-v2.6-motion-s1",
        name="kling-v2.6-motion",
        display_name="Kling v2.6 - Motion Control",
        server=Server.SERVER1,
        supports_text_to_video=False,
        supports_image_to_video=True,
        supports_first_last_frame=False,
        supports_audio=True,
        supports_negative_prompt=False,
        supports_motion_control=True,
        max_images=1,
        max_video_duration=30,
        aspect_ratios=(),
        durations=(),
        resolutions=("720p",),
        modes=("standard", "pro"),
        default_aspect_ratio="",
        default_duration=0,
        default_resolution="720p",
        default_mode="standard",
        pricing=(
            VideoPrice(mode="standard", price_per_second=_d("0.07"), price=_d("0")),
            VideoPrice(mode="pro", price_per_second=_d("0.112"), price=_d("0")),
        ),
    ),
    VideoModel(
        id="veo-3.1-fast-s2",
        name="veo-3.1-fast",
        display_name="Google Veo 3.1 Fast",
        server=Server.SERVER2,
        supports_text_to_video=True,
        supports_image_to_video=True,
        supports_first_last_frame=True,
        supports_audio=True,
        supports_negative_prompt=False,
        max_images=2,
        aspect_ratios=("16:9", "9:16"),
        durations=(4, 6, 8),
        resolutions=("720p",),
        modes=("standard",),
        default_aspect_ratio="16:9",
        default_duration=8,
        default_resolution="720p",
        default_mode="standard",
        pricing=_VEO_PRICING,
    ),
    VideoModel(
        id="sora-2-s2",
        name="sora-2",
        display_name="Sora 2",
        server=Server.SERVER2,
        supports_text_to_video=True,
        supports_image_to_video=True,
        supports_first_last_frame=False,
        supports_audio=False,
        supports_negative_prompt=False,
        max_images=1,
        aspect_ratios=("16:9", "9:16"),
        durations=(4, 8, 12),
        resolutions=("720p",),
        modes=("standard",),
        default_aspect_ratio="16:9",
        default_duration=8,
        default_resolution="720p",
        default_mode="standard",
        pricing=_SORA_PRICING,
    ),
)


def get_image_model(model_id: str) -> ImageModel | None:
    """Find an image model by catalog id or provider model name."""
    for model in IMAGE_MODELS:
        if model.id == model_id or model.name == model_id:
            return model
    return None


def get_video_model(model_id: str) -> VideoModel | None:
    """Find a video model by catalog id."""
    for model in VIDEO_MODELS:
        if model.id == model_id:
            return model
    return None


def image_models_for(server: Server | None = None) -> list[ImageModel]:
    return [m for m in IMAGE_MODELS if server is None or m.server == server]


def video_models_for(server: Server | None = None) -> list[VideoModel]:
    return [m for m in VIDEO_MODELS if server is None or m.server == server]


def edit_variant_for(model_name: str) -> str | None:
    """Return the image-to-image endpoint path for a text-to-image model, if any."""
    model = get_image_model(model_name)
    return model.edit_variant if model else None


def calculate_image_price(model: ImageModel, resolution: str | None = None) -> Decimal:
    """Price of one image.

    Resolution only matters for models with more than one pricing tier;
    otherwise the first tier applies.
    """
    if resolution and len(model.pricing) > 1:
        for tier in model.pricing:
            if tier.resolution == resolution:
                return tier.price
    return model.pricing[0].price if model.pricing else Decimal("0")


def calculate_video_price(
    model: VideoModel,
    duration: int | None = None,
    audio_on: bool | None = None,
    mode: str | None = None,
    resolution: str | None = None,
    video_duration: int | None = None,
) -> Decimal:
    """Price of one video.

    Tiers are scanned in order. A per-second tier applies when a reference
    video duration is given and the mode matches (or no mode is requested).
    Otherwise the first tier whose set criteria all agree with the provided
    ones wins. Falls back to the first tier.
    """
    for tier in model.pricing:
        if tier.price_per_second and video_duration:
            if not mode or tier.mode == mode:
                return tier.price_per_second * video_duration
            continue

        if duration is not None and tier.duration is not None and tier.duration != duration:
            continue
        if audio_on is not None and tier.audio_on is not None and tier.audio_on != audio_on:
            continue
        if mode and tier.mode and tier.mode != mode:
            continue
        if resolution and tier.resolution and tier.resolution != resolution:
            continue
        return tier.price

    return model.pricing[0].price if model.pricing else Decimal("0")
