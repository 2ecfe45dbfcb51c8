"""Generation orchestrator: credit gate, credential selection, provider cycle, reconciliation.

Two entry points share the same preparation:
- generate: submit and poll to a terminal outcome while the caller waits
- submit_detached: submit and return a job handle; reconcile_pending finishes it later

Billing happens only after the provider reports success, in a single Unit of Work:
job row completed, ledger debited with an optimistic balance check, credential
debited with a conditional decrement, one transaction row appended.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog

from genhub.core.config import Settings
from genhub.models.api_key import Server
from genhub.models.credit_transaction import CreditTransaction
from genhub.models.generation import GENERATION_MODELS, GenerationBase, GenerationKind
from genhub.models.timestamps import as_utc, utcnow
from genhub.services.exceptions import (
    GenerationError,
    InsufficientCreditsError,
    JobAlreadyFinalizedError,
    JobNotFoundError,
    NoCredentialAvailableError,
    PollTimeoutError,
    ProviderFailure,
    ReconciliationConflictError,
    SubmissionError,
    TransientError,
    ValidationError,
)
from genhub.services.providers.base import (
    Completed,
    Failed,
    NormalizedGenerationRequest,
    PollHandle,
    ProviderAdapter,
    SleepFn,
    poll_until_terminal,
)
from genhub.services.providers.registry import AdapterRegistry

logger = structlog.get_logger(__name__)

MAX_VIDEO_REFERENCE_IMAGES = 2

IMAGE_DEFAULTS = {"aspect_ratio": "1:1", "resolution": "1K", "output_format": "png"}
VIDEO_DEFAULTS = {"aspect_ratio": "16:9", "duration_seconds": 8, "resolution": "1080p"}

TRANSACTION_TYPES = {
    GenerationKind.IMAGE: "image_generation",
    GenerationKind.VIDEO: "video_generation",
}
DESCRIPTION_PREFIXES = {
    GenerationKind.IMAGE: "Image generation",
    GenerationKind.VIDEO: "Video generation",
}


@dataclass
class GenerationCommand:
    """Inbound job request after HTTP parsing."""

    server: Server
    credits_cost: Decimal
    request: NormalizedGenerationRequest
    model_name: Optional[str] = None
    existing_job_id: Optional[UUID] = None

    @property
    def kind(self) -> GenerationKind:
        return self.request.kind


@dataclass(frozen=True)
class GenerationResult:
    job_id: UUID
    output_url: str
    credits_used: Decimal


@dataclass(frozen=True)
class DetachedSubmission:
    job_id: UUID
    status: str = "pending"


@dataclass
class ReconcileSummary:
    """Counts from one reconciliation sweep."""

    completed: int = 0
    failed: int = 0
    pending: int = 0
    conflicts: int = 0
    skipped: int = 0
    job_ids: list[UUID] = field(default_factory=list)


@dataclass(frozen=True)
class _PreparedJob:
    job_id: UUID
    adapter: ProviderAdapter
    api_key_id: UUID
    api_key_secret: str


class _LedgerConflict(Exception):
    """Ledger balance changed between read and conditional update."""


class GenerationOrchestrator:
    """Drives generation jobs from request to billed result.

    Args:
        uow_factory: Async callable returning a UnitOfWork
        registry: Adapter lookup by (kind, server)
        settings: Reconciliation retry budget
        sleep: Awaitable used between status checks (injectable for tests)
    """

    def __init__(
        self,
        uow_factory: Callable[[], Any],
        registry: AdapterRegistry,
        settings: Settings,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.uow_factory = uow_factory
        self.registry = registry
        self.max_reconcile_attempts = max(1, settings.reconciliation_max_retries)
        self.sleep = sleep

    async def generate(self, user_id: str, command: GenerationCommand) -> GenerationResult:
        """Run a job to completion and bill it.

        Raises:
            ValidationError, ProviderNotImplementedError: Before any write
            InsufficientCreditsError, NoCredentialAvailableError: Gate failures
            JobAlreadyFinalizedError: existing_job_id names a terminal job
            SubmissionError, ProviderFailure, PollTimeoutError: Job marked failed
            ReconciliationConflictError: Output produced but billing could not commit
        """
        prepared = await self._prepare(user_id, command)
        handle = await self._submit(command, prepared, detached=False)

        try:
            output_url = await poll_until_terminal(
                prepared.adapter, handle, prepared.api_key_secret, sleep=self.sleep
            )
        except (ProviderFailure, PollTimeoutError) as e:
            await self._fail_job(command.kind, prepared.job_id, str(e))
            raise
        except Exception as e:
            raise await self._fail_unexpected(command.kind, prepared.job_id, e) from e

        try:
            await self._reconcile_success(
                user_id=user_id,
                kind=command.kind,
                job_id=prepared.job_id,
                api_key_id=prepared.api_key_id,
                cost=command.credits_cost,
                output_url=output_url,
            )
        except GenerationError:
            raise
        except Exception as e:
            raise await self._fail_unexpected(command.kind, prepared.job_id, e) from e

        logger.info(
            "generation.completed",
            job_id=str(prepared.job_id),
            kind=command.kind.value,
            credits_used=str(command.credits_cost),
        )
        return GenerationResult(
            job_id=prepared.job_id, output_url=output_url, credits_used=command.credits_cost
        )

    async def submit_detached(self, user_id: str, command: GenerationCommand) -> DetachedSubmission:
        """Submit a job and return immediately; reconcile_pending finishes it."""
        prepared = await self._prepare(user_id, command)
        await self._submit(command, prepared, detached=True)
        logger.info("generation.detached", job_id=str(prepared.job_id), kind=command.kind.value)
        return DetachedSubmission(job_id=prepared.job_id)

    async def get_job(self, user_id: str, kind: GenerationKind, job_id: UUID) -> GenerationBase:
        """Read one of the caller's jobs.

        Raises:
            JobNotFoundError: Unknown id or owned by another user
        """
        async with await self.uow_factory() as uow:
            job = await uow.generations(kind).get_for_user(job_id, user_id)
        if job is None:
            raise JobNotFoundError("Generation not found")
        return job

    async def reconcile_pending(self, limit: int = 20) -> ReconcileSummary:
        """Poll every detached pending job once and finalize terminal ones.

        A job still pending after its adapter's full polling window
        (interval x max attempts since submission) is failed with the adapter's
        timeout message.
        """
        summary = ReconcileSummary()
        claimed: list[tuple[GenerationKind, GenerationBase, Optional[str]]] = []

        async with await self.uow_factory() as uow:
            for kind in GenerationKind:
                for job in await uow.generations(kind).get_pending_detached(limit):
                    api_key = await uow.api_keys.get_by_id(job.api_key_id) if job.api_key_id else None
                    claimed.append((kind, job, api_key.api_key if api_key else None))

        for kind, job, secret in claimed:
            summary.job_ids.append(job.id)
            await self._reconcile_one(kind, job, secret, summary)

        if claimed:
            logger.info(
                "reconciliation.sweep_finished",
                claimed=len(claimed),
                completed=summary.completed,
                failed=summary.failed,
                pending=summary.pending,
                conflicts=summary.conflicts,
            )
        return summary

    async def _reconcile_one(
        self,
        kind: GenerationKind,
        job: GenerationBase,
        secret: Optional[str],
        summary: ReconcileSummary,
    ) -> None:
        log = logger.bind(job_id=str(job.id), kind=kind.value)

        try:
            adapter = self.registry.get(kind, Server(job.server))
        except GenerationError as e:
            await self._fail_job(kind, job.id, str(e))
            summary.failed += 1
            return

        if secret is None or job.api_key_id is None:
            await self._fail_job(kind, job.id, "No available API key")
            summary.failed += 1
            return

        handle = PollHandle(
            request_id=job.request_id or "",
            status_url=job.status_url,
            response_url=job.response_url,
            output_format=job.output_format,
        )

        try:
            outcome = await adapter.poll(handle, secret)
        except TransientError as e:
            log.warning("reconciliation.poll_error", error=str(e))
            outcome = None
        except Exception as e:
            await self._fail_unexpected(kind, job.id, e)
            summary.failed += 1
            return

        if isinstance(outcome, Completed):
            try:
                await self._reconcile_success(
                    user_id=job.user_id,
                    kind=kind,
                    job_id=job.id,
                    api_key_id=job.api_key_id,
                    cost=job.credits_used,
                    output_url=outcome.url,
                )
                summary.completed += 1
            except ReconciliationConflictError:
                summary.conflicts += 1
            except JobAlreadyFinalizedError:
                summary.skipped += 1
            except Exception as e:
                await self._fail_unexpected(kind, job.id, e)
                summary.failed += 1
            return

        if isinstance(outcome, Failed):
            await self._fail_job(kind, job.id, outcome.reason)
            summary.failed += 1
            return

        window = timedelta(seconds=adapter.poll_interval_seconds * adapter.max_poll_attempts)
        submitted_at = as_utc(job.submitted_at or job.created_at)
        if utcnow() - submitted_at > window:
            log.warning("reconciliation.timed_out", submitted_at=submitted_at.isoformat())
            await self._fail_job(kind, job.id, adapter.timeout_message)
            summary.failed += 1
            return

        summary.pending += 1

    async def _prepare(self, user_id: str, command: GenerationCommand) -> _PreparedJob:
        """Validate, check credits, select a credential and create or reuse the job row."""
        adapter = self._validate(command)
        kind = command.kind
        cost = command.credits_cost
        failure: Optional[GenerationError] = None

        async with await self.uow_factory() as uow:
            repo = uow.generations(kind)
            existing = await self._load_existing(repo, user_id, command)

            ledger = await uow.user_credits.get_by_user(user_id)
            api_key = None
            if ledger is None or ledger.balance < cost:
                failure = InsufficientCreditsError()
            else:
                api_key = await uow.api_keys.select_for_job(command.server.provider, cost)
                if api_key is None:
                    failure = NoCredentialAvailableError()

            if failure is not None:
                if existing is not None:
                    existing.mark_failed(str(failure))
                logger.info(
                    "generation.rejected",
                    user_id=user_id,
                    kind=kind.value,
                    reason=str(failure),
                    existing_job_id=str(existing.id) if existing else None,
                )
            else:
                assert api_key is not None
                job = existing or GENERATION_MODELS[kind](
                    id=command.existing_job_id or uuid4(),
                    user_id=user_id,
                    prompt=command.request.prompt,
                    model_id=command.request.model_identifier,
                    server=command.server.value,
                )
                self._apply_request(job, command)
                job.attach_api_key(api_key.id)
                if existing is None:
                    await repo.add(job)
                prepared = _PreparedJob(
                    job_id=job.id,
                    adapter=adapter,
                    api_key_id=api_key.id,
                    api_key_secret=api_key.api_key,
                )

        if failure is not None:
            raise failure

        logger.info(
            "generation.prepared",
            job_id=str(prepared.job_id),
            user_id=user_id,
            kind=kind.value,
            server=command.server.value,
            api_key_id=str(prepared.api_key_id),
        )
        return prepared

    def _validate(self, command: GenerationCommand) -> ProviderAdapter:
        request = command.request
        if not request.prompt or not request.prompt.strip():
            raise ValidationError("Prompt is required")
        if not request.model_identifier:
            raise ValidationError("Model identifier is required")
        if command.credits_cost < 0:
            raise ValidationError("Credits cost must not be negative")

        if request.kind == GenerationKind.VIDEO:
            if len(request.reference_images) > MAX_VIDEO_REFERENCE_IMAGES:
                raise ValidationError(
                    f"At most {MAX_VIDEO_REFERENCE_IMAGES} reference images are supported for video"
                )
            defaults: dict[str, Any] = VIDEO_DEFAULTS
        else:
            defaults = IMAGE_DEFAULTS

        for name, value in defaults.items():
            if getattr(request, name) in (None, ""):
                setattr(request, name, value)

        return self.registry.get(request.kind, command.server)

    async def _load_existing(
        self, repo: Any, user_id: str, command: GenerationCommand
    ) -> Optional[GenerationBase]:
        if command.existing_job_id is None:
            return None

        existing = await repo.lock_by_id(command.existing_job_id)
        if existing is None:
            return None
        if existing.user_id != user_id:
            raise JobNotFoundError("Generation not found")
        if existing.is_terminal:
            raise JobAlreadyFinalizedError(f"Generation {existing.id} is already {existing.status}")
        return existing

    @staticmethod
    def _apply_request(job: GenerationBase, command: GenerationCommand) -> None:
        request = command.request
        job.prompt = request.prompt
        job.negative_prompt = request.negative_prompt
        job.aspect_ratio = request.aspect_ratio
        job.resolution = request.resolution
        job.output_format = request.output_format
        job.reference_image_count = len(request.reference_images)
        job.model_id = request.model_identifier
        job.model_name = command.model_name
        job.server = command.server.value
        job.credits_used = command.credits_cost
        if request.kind == GenerationKind.VIDEO:
            job.duration_seconds = request.duration_seconds
            job.audio_enabled = request.audio_enabled

    async def _submit(
        self, command: GenerationCommand, prepared: _PreparedJob, detached: bool
    ) -> PollHandle:
        """Submit to the provider and persist the poll handle on the job row."""
        try:
            handle = await prepared.adapter.submit(command.request, prepared.api_key_secret)
        except (SubmissionError, ValidationError) as e:
            await self._fail_job(command.kind, prepared.job_id, str(e))
            raise
        except TransientError as e:
            await self._fail_job(command.kind, prepared.job_id, str(e))
            raise SubmissionError(str(e)) from e
        except Exception as e:
            logger.error(
                "generation.submit_unexpected_error",
                job_id=str(prepared.job_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._fail_job(command.kind, prepared.job_id, f"Submission failed: {e}")
            raise SubmissionError(f"Submission failed: {e}") from e

        async with await self.uow_factory() as uow:
            job = await uow.generations(command.kind).lock_by_id(prepared.job_id)
            if job is not None and not job.is_terminal:
                job.record_submission(
                    request_id=handle.request_id,
                    status_url=handle.status_url,
                    response_url=handle.response_url,
                    detached=detached,
                )

        logger.info(
            "generation.submitted",
            job_id=str(prepared.job_id),
            request_id=handle.request_id,
            detached=detached,
        )
        return handle

    async def _fail_job(self, kind: GenerationKind, job_id: UUID, message: str) -> None:
        async with await self.uow_factory() as uow:
            job = await uow.generations(kind).lock_by_id(job_id)
            if job is None or job.is_terminal:
                return
            job.mark_failed(message or f"Failed to generate {kind.value}")
        logger.info("generation.failed", job_id=str(job_id), kind=kind.value, error=message)

    async def _fail_unexpected(
        self, kind: GenerationKind, job_id: UUID, error: Exception
    ) -> ProviderFailure:
        """Fail the job for an error outside the provider contract and return the caller error."""
        logger.error(
            "generation.unexpected_error",
            job_id=str(job_id),
            kind=kind.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        message = f"Unexpected error: {error}"
        await self._fail_job(kind, job_id, message)
        return ProviderFailure(message)

    async def _reconcile_success(
        self,
        user_id: str,
        kind: GenerationKind,
        job_id: UUID,
        api_key_id: UUID,
        cost: Decimal,
        output_url: str,
    ) -> None:
        """Complete the job and bill it atomically, retrying ledger conflicts.

        If billing cannot be committed the job is still completed with its URL
        in a separate unit, and ReconciliationConflictError is raised.
        """
        failure: Optional[ReconciliationConflictError] = None

        for attempt in range(1, self.max_reconcile_attempts + 1):
            try:
                async with await self.uow_factory() as uow:
                    job = await uow.generations(kind).lock_by_id(job_id)
                    if job is None:
                        raise JobNotFoundError("Generation not found")
                    if job.is_terminal:
                        raise JobAlreadyFinalizedError(f"Generation {job_id} is already {job.status}")

                    ledger = await uow.user_credits.get_by_user(user_id)
                    if ledger is None or ledger.balance < cost:
                        raise ReconciliationConflictError(
                            "Insufficient credits at reconciliation"
                        )
                    if not await uow.user_credits.debit(user_id, cost, ledger.balance):
                        raise _LedgerConflict()
                    if not await uow.api_keys.debit(api_key_id, cost):
                        raise ReconciliationConflictError(
                            "API key no longer has enough credits"
                        )

                    job.mark_completed(output_url)
                    transaction = CreditTransaction(
                        user_id=user_id,
                        api_key_id=api_key_id,
                        amount=-cost,
                        transaction_type=TRANSACTION_TYPES[kind],
                        description=f"{DESCRIPTION_PREFIXES[kind]}: {job.model_name or job.model_id}",
                    )
                    if kind == GenerationKind.VIDEO:
                        transaction.video_generation_id = job_id
                    else:
                        transaction.image_generation_id = job_id
                    await uow.credit_transactions.add(transaction)

                logger.info(
                    "reconciliation.committed", job_id=str(job_id), attempt=attempt, amount=str(cost)
                )
                return
            except _LedgerConflict:
                logger.warning("reconciliation.conflict", job_id=str(job_id), attempt=attempt)
            except ReconciliationConflictError as e:
                failure = e
                break

        if failure is None:
            failure = ReconciliationConflictError(
                "Credit balance changed concurrently; billing could not be committed"
            )

        async with await self.uow_factory() as uow:
            job = await uow.generations(kind).lock_by_id(job_id)
            if job is not None and not job.is_terminal:
                job.mark_completed(output_url)

        logger.error(
            "reconciliation.failed",
            job_id=str(job_id),
            user_id=user_id,
            api_key_id=str(api_key_id),
            amount=str(cost),
            error=str(failure),
        )
        raise failure
