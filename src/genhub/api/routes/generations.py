"""Generation job API endpoints.

- POST /api/generations - Run (or, with detach=true, submit) an image or video job
- GET /api/generations/{kind} - List the caller's jobs of one kind, newest first
- GET /api/generations/{kind}/{job_id} - Read one of the caller's jobs

Errors raised by the orchestrator are rendered as {"error": message} by the
GenerationError handler registered in the app factory.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from genhub.api.dependencies import get_current_user, get_orchestrator, get_uow_factory
from genhub.models.api_key import Server
from genhub.models.generation import GenerationBase, GenerationKind
from genhub.services.auth import AuthenticatedUser
from genhub.services.orchestrator import GenerationCommand, GenerationOrchestrator
from genhub.services.providers.base import NormalizedGenerationRequest

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request/Response Models


class GenerationRequest(CamelModel):
    """Inbound job request from the web client."""

    kind: GenerationKind = Field(..., description="image or video")
    prompt: str = Field(..., description="Generation prompt")
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    duration_seconds: Optional[int] = Field(default=None, ge=1)
    audio_enabled: bool = False
    output_format: Optional[str] = None
    reference_images: list[str] = Field(
        default_factory=list, description="Data-URL encoded reference images, in order"
    )
    model_identifier: str = Field(..., description="Provider model identifier")
    model_name: Optional[str] = None
    target_provider: Server = Field(..., description="server1 (fal.ai) or server2 (GMI Cloud)")
    credits_cost: Decimal = Field(..., description="Credits charged on success")
    existing_job_id: Optional[UUID] = Field(
        default=None, description="Pre-created pending job to update instead of inserting"
    )
    detach: bool = Field(default=False, description="Return after submission; finish in background")

    def to_command(self) -> GenerationCommand:
        return GenerationCommand(
            server=self.target_provider,
            credits_cost=self.credits_cost,
            model_name=self.model_name,
            existing_job_id=self.existing_job_id,
            request=NormalizedGenerationRequest(
                kind=self.kind,
                prompt=self.prompt,
                model_identifier=self.model_identifier,
                negative_prompt=self.negative_prompt,
                aspect_ratio=self.aspect_ratio,
                resolution=self.resolution,
                duration_seconds=self.duration_seconds,
                audio_enabled=self.audio_enabled,
                output_format=self.output_format,
                reference_images=list(self.reference_images),
            ),
        )


class GenerationResponse(CamelModel):
    job_id: UUID
    output_url: str
    credits_used: float


class DetachedResponse(CamelModel):
    job_id: UUID
    status: str


class GenerationDTO(CamelModel):
    """Job row projection returned to its owner."""

    id: UUID
    status: str
    prompt: str
    model_id: str
    model_name: Optional[str] = None
    server: str
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    output_format: Optional[str] = None
    duration_seconds: Optional[int] = None
    audio_enabled: Optional[bool] = None
    credits_used: float
    output_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: GenerationBase) -> "GenerationDTO":
        return cls(
            id=job.id,
            status=job.status,
            prompt=job.prompt,
            model_id=job.model_id,
            model_name=job.model_name,
            server=job.server,
            aspect_ratio=job.aspect_ratio,
            resolution=job.resolution,
            output_format=job.output_format,
            duration_seconds=job.duration_seconds,
            audio_enabled=job.audio_enabled,
            credits_used=float(job.credits_used),
            output_url=job.output_url,
            error_message=job.error_message,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


# Endpoints


@router.post(
    "",
    response_model=GenerationResponse,
    responses={status.HTTP_202_ACCEPTED: {"model": DetachedResponse}},
)
async def create_generation(
    body: GenerationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Run a generation job for the authenticated user.

    Synchronous by default: the response carries the output URL once the
    provider finishes. With detach=true the job id is returned with 202 and
    the reconciliation worker completes it.
    """
    command = body.to_command()
    logger.info(
        "generation.requested",
        user_id=user.id,
        kind=body.kind.value,
        server=body.target_provider.value,
        model=body.model_identifier,
        detach=body.detach,
    )

    if body.detach:
        submission = await orchestrator.submit_detached(user.id, command)
        payload = DetachedResponse(job_id=submission.job_id, status=submission.status)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=payload.model_dump(mode="json", by_alias=True),
        )

    result = await orchestrator.generate(user.id, command)
    return GenerationResponse(
        job_id=result.job_id,
        output_url=result.output_url,
        credits_used=float(result.credits_used),
    )


@router.get("/{kind}/{job_id}", response_model=GenerationDTO)
async def get_generation(
    kind: GenerationKind,
    job_id: UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> GenerationDTO:
    """Read a job row owned by the caller (404 otherwise)."""
    job = await orchestrator.get_job(user.id, kind, job_id)
    return GenerationDTO.from_job(job)


@router.get("/{kind}", response_model=list[GenerationDTO])
async def list_generations(
    kind: GenerationKind,
    limit: int = Query(50, ge=1, le=100),
    user: AuthenticatedUser = Depends(get_current_user),
    uow_factory=Depends(get_uow_factory),
) -> list[GenerationDTO]:
    """Return the caller's image or video history, newest first."""
    async with await uow_factory() as uow:
        jobs = await uow.generations(kind).list_by_user(user.id, limit=limit)
    return [GenerationDTO.from_job(job) for job in jobs]
