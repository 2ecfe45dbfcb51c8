"""Adapter lookup by media kind and server."""

from typing import Optional

import httpx

from genhub.core.config import Settings
from genhub.models.api_key import Server
from genhub.models.generation import GenerationKind
from genhub.services.exceptions import ProviderNotImplementedError
from genhub.services.providers.base import ProviderAdapter
from genhub.services.providers.fal import FalImageAdapter, FalVideoAdapter
from genhub.services.providers.gmi import GmiImageAdapter

SERVER_LABELS = {
    Server.SERVER1: "Server 1 (fal.ai)",
    Server.SERVER2: "Server 2 (GMI Cloud)",
}


class AdapterRegistry:
    """Maps (kind, server) to a configured ProviderAdapter.

    GMI Cloud video has no adapter; looking it up raises
    ProviderNotImplementedError so callers fail before any credit checks.
    """

    def __init__(self, adapters: dict[tuple[GenerationKind, Server], ProviderAdapter]):
        self.adapters = adapters

    def get(self, kind: GenerationKind, server: Server) -> ProviderAdapter:
        adapter = self.adapters.get((kind, server))
        if adapter is None:
            raise ProviderNotImplementedError(f"{SERVER_LABELS[server]} not yet implemented")
        return adapter

    @classmethod
    def from_settings(
        cls, settings: Settings, client: Optional[httpx.AsyncClient] = None
    ) -> "AdapterRegistry":
        """Build the production registry from polling and endpoint settings."""
        timeout = settings.provider_http_timeout_seconds
        image_policy = {
            "poll_interval_seconds": settings.image_poll_interval_seconds,
            "max_poll_attempts": settings.image_max_poll_attempts,
            "client": client,
            "timeout": timeout,
        }
        video_policy = {
            "poll_interval_seconds": settings.video_poll_interval_seconds,
            "max_poll_attempts": settings.video_max_poll_attempts,
            "client": client,
            "timeout": timeout,
        }
        return cls(
            {
                (GenerationKind.IMAGE, Server.SERVER1): FalImageAdapter(
                    base_url=settings.fal_queue_base_url, **image_policy
                ),
                (GenerationKind.IMAGE, Server.SERVER2): GmiImageAdapter(
                    queue_url=settings.gmi_queue_url, **image_policy
                ),
                (GenerationKind.VIDEO, Server.SERVER1): FalVideoAdapter(
                    endpoint=settings.fal_video_endpoint, **video_policy
                ),
            }
        )
