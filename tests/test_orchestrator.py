"""Generation orchestrator tests.

Tests run against a real SQLite database and scripted provider adapters:
- Credit gate and credential selection happen before any provider call
- Billing happens exactly once, only after success
- Failures and timeouts leave balances untouched
- Detached jobs are finalized by the reconciliation sweep
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from fakes import ProviderStub, RecordingSleep, ScriptedAdapter, make_registry
from sqlalchemy import func, select

from genhub.models.api_key import Provider, Server
from genhub.models.generation import (
    GenerationKind,
    GenerationStatus,
    ImageGeneration,
    VideoGeneration,
)
from genhub.models.timestamps import utcnow
from genhub.repositories.user_credits import UserCreditsRepository
from genhub.services.exceptions import (
    InsufficientCreditsError,
    JobAlreadyFinalizedError,
    JobNotFoundError,
    NoCredentialAvailableError,
    PollTimeoutError,
    ProviderFailure,
    ProviderNetworkError,
    ProviderNotImplementedError,
    ReconciliationConflictError,
    SubmissionError,
    ValidationError,
)
from genhub.services.orchestrator import GenerationCommand, GenerationOrchestrator
from genhub.services.providers.base import Completed, Failed, NormalizedGenerationRequest, Pending
from genhub.services.providers.fal import FalImageAdapter

USER = "user-1"


def image_command(cost: str = "1.5", **overrides) -> GenerationCommand:
    existing_job_id = overrides.pop("existing_job_id", None)
    server = overrides.pop("server", Server.SERVER1)
    model_name = overrides.pop("model_name", "Imagen 4 Ultra")
    fields = {
        "kind": GenerationKind.IMAGE,
        "prompt": "a red cube",
        "model_identifier": "fal-ai/imagen4/preview/ultra",
    }
    fields.update(overrides)
    return GenerationCommand(
        server=server,
        credits_cost=Decimal(cost),
        request=NormalizedGenerationRequest(**fields),
        model_name=model_name,
        existing_job_id=existing_job_id,
    )


def video_command(cost: str = "1.5", **overrides) -> GenerationCommand:
    server = overrides.pop("server", Server.SERVER1)
    fields = {"kind": GenerationKind.VIDEO, "prompt": "waves", "model_identifier": "veo-3.1-fast"}
    fields.update(overrides)
    return GenerationCommand(
        server=server,
        credits_cost=Decimal(cost),
        request=NormalizedGenerationRequest(**fields),
    )


def build(uow_factory, settings, adapter=None, video=None, sleep=None) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        uow_factory,
        make_registry(image=adapter, video=video),
        settings,
        sleep=sleep or RecordingSleep(),
    )


async def balance_of(uow_factory, user_id: str = USER):
    async with await uow_factory() as uow:
        ledger = await uow.user_credits.get_by_user(user_id)
    return ledger.balance if ledger else None


async def credits_of(uow_factory, api_key_id):
    async with await uow_factory() as uow:
        api_key = await uow.api_keys.get_by_id(api_key_id)
    return api_key.credits


async def transactions_of(uow_factory, user_id: str = USER):
    async with await uow_factory() as uow:
        return await uow.credit_transactions.list_by_user(user_id)


async def load_job(uow_factory, kind: GenerationKind, job_id):
    async with await uow_factory() as uow:
        return await uow.generations(kind).get_by_id(job_id)


async def count_rows(uow_factory, model) -> int:
    async with await uow_factory() as uow:
        result = await uow.session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


async def seed_pending_job(uow_factory, user_id: str = USER, kind=GenerationKind.IMAGE):
    model = ImageGeneration if kind == GenerationKind.IMAGE else VideoGeneration
    async with await uow_factory() as uow:
        return await uow.generations(kind).add(
            model(user_id=user_id, prompt="draft", model_id="draft", server="server1")
        )


class TestGenerateSuccess:
    @pytest.mark.asyncio
    async def test_success_bills_once(self, uow_factory, settings, seed_ledger, seed_api_key):
        await seed_ledger(USER, "10")
        key = await seed_api_key("10", secret="fal-secret")
        adapter = ScriptedAdapter([Pending("IN_QUEUE"), Completed("https://cdn/out.png")])
        orchestrator = build(uow_factory, settings, adapter)

        result = await orchestrator.generate(USER, image_command())

        assert result.output_url == "https://cdn/out.png"
        assert result.credits_used == Decimal("1.5")
        assert adapter.submitted[0][1] == "fal-secret"

        assert await balance_of(uow_factory) == Decimal("8.5")
        assert await credits_of(uow_factory, key.id) == Decimal("8.5")

        transactions = await transactions_of(uow_factory)
        assert len(transactions) == 1
        assert transactions[0].amount == Decimal("-1.5")
        assert transactions[0].transaction_type == "image_generation"
        assert transactions[0].description == "Image generation: Imagen 4 Ultra"
        assert transactions[0].image_generation_id == result.job_id
        assert transactions[0].api_key_id == key.id

        job = await load_job(uow_factory, GenerationKind.IMAGE, result.job_id)
        assert job.status == GenerationStatus.COMPLETED.value
        assert job.output_url == "https://cdn/out.png"
        assert job.credits_used == Decimal("1.5")
        assert job.request_id == "req-1"
        assert job.detached is False

    @pytest.mark.asyncio
    async def test_image_defaults_applied(self, uow_factory, settings, seed_ledger, seed_api_key):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        adapter = ScriptedAdapter()
        orchestrator = build(uow_factory, settings, adapter)

        await orchestrator.generate(USER, image_command())

        request = adapter.submitted[0][0]
        assert request.aspect_ratio == "1:1"
        assert request.resolution == "1K"
        assert request.output_format == "png"

    @pytest.mark.asyncio
    async def test_video_job_billed_to_video_history(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        video = ScriptedAdapter([Completed("https://cdn/v.mp4")], poll_interval_seconds=5.0)
        orchestrator = build(uow_factory, settings, video=video)

        result = await orchestrator.generate(USER, video_command())

        request = video.submitted[0][0]
        assert (request.aspect_ratio, request.duration_seconds, request.resolution) == (
            "16:9",
            8,
            "1080p",
        )
        transactions = await transactions_of(uow_factory)
        assert transactions[0].transaction_type == "video_generation"
        assert transactions[0].video_generation_id == result.job_id
        assert transactions[0].description == "Video generation: veo-3.1-fast"
        assert await count_rows(uow_factory, ImageGeneration) == 0
        job = await load_job(uow_factory, GenerationKind.VIDEO, result.job_id)
        assert job.duration_seconds == 8

    @pytest.mark.asyncio
    async def test_highest_balance_key_selected(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        small = await seed_api_key("5", secret="small")
        large = await seed_api_key("10", secret="large")
        await seed_api_key("50", secret="inactive", is_active=False)
        await seed_api_key("50", secret="other-provider", provider=Provider.GMICLOUD)
        adapter = ScriptedAdapter()
        orchestrator = build(uow_factory, settings, adapter)

        await orchestrator.generate(USER, image_command())

        assert adapter.submitted[0][1] == "large"
        assert await credits_of(uow_factory, large.id) == Decimal("8.5")
        assert await credits_of(uow_factory, small.id) == Decimal("5")

    @pytest.mark.asyncio
    async def test_zero_cost_job(self, uow_factory, settings, seed_ledger, seed_api_key):
        await seed_ledger(USER, "0")
        await seed_api_key("1")
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        result = await orchestrator.generate(USER, image_command(cost="0"))

        assert result.credits_used == Decimal("0")
        assert await balance_of(uow_factory) == Decimal("0")


class TestGate:
    """Rejections before the provider is contacted."""

    @pytest.mark.asyncio
    async def test_insufficient_credits_writes_nothing(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "1")
        key = await seed_api_key("10")
        adapter = ScriptedAdapter()
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(InsufficientCreditsError, match="Insufficient credits"):
            await orchestrator.generate(USER, image_command())

        assert adapter.submitted == []
        assert await count_rows(uow_factory, ImageGeneration) == 0
        assert await balance_of(uow_factory) == Decimal("1")
        assert await credits_of(uow_factory, key.id) == Decimal("10")

    @pytest.mark.asyncio
    async def test_missing_ledger_row_is_insufficient(self, uow_factory, settings, seed_api_key):
        await seed_api_key("10")
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        with pytest.raises(InsufficientCreditsError):
            await orchestrator.generate(USER, image_command())

    @pytest.mark.asyncio
    async def test_key_must_strictly_exceed_cost(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("1.5")
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        with pytest.raises(NoCredentialAvailableError, match="No available API key"):
            await orchestrator.generate(USER, image_command())

        assert await count_rows(uow_factory, ImageGeneration) == 0

    @pytest.mark.asyncio
    async def test_gate_failure_marks_existing_job_failed(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "1")
        await seed_api_key("10")
        job = await seed_pending_job(uow_factory)
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        with pytest.raises(InsufficientCreditsError):
            await orchestrator.generate(USER, image_command(existing_job_id=job.id))

        stored = await load_job(uow_factory, GenerationKind.IMAGE, job.id)
        assert stored.status == GenerationStatus.FAILED.value
        assert stored.error_message == "Insufficient credits"

    @pytest.mark.asyncio
    async def test_server2_video_not_implemented(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10", provider=Provider.GMICLOUD)
        orchestrator = build(uow_factory, settings, ScriptedAdapter(), video=ScriptedAdapter())

        with pytest.raises(ProviderNotImplementedError, match="Server 2 \\(GMI Cloud\\) not yet"):
            await orchestrator.generate(USER, video_command(server=Server.SERVER2))

        assert await count_rows(uow_factory, VideoGeneration) == 0

    @pytest.mark.asyncio
    async def test_blank_prompt_rejected(self, uow_factory, settings):
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        with pytest.raises(ValidationError, match="Prompt is required"):
            await orchestrator.generate(USER, image_command(prompt="   "))

    @pytest.mark.asyncio
    async def test_too_many_video_images_rejected(self, uow_factory, settings):
        video = ScriptedAdapter()
        orchestrator = build(uow_factory, settings, video=video)

        with pytest.raises(ValidationError):
            await orchestrator.generate(USER, video_command(reference_images=["a", "b", "c"]))

        assert video.submitted == []


class TestProviderOutcomes:
    """Failures after submission: the job row fails, balances stay put."""

    @pytest.mark.asyncio
    async def test_provider_failure_reason_passed_through(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        key = await seed_api_key("10")
        adapter = ScriptedAdapter([Pending("IN_PROGRESS"), Failed("NSFW content detected")])
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(ProviderFailure, match="NSFW content detected"):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.FAILED.value
        assert jobs[0].error_message == "NSFW content detected"
        assert await balance_of(uow_factory) == Decimal("10")
        assert await credits_of(uow_factory, key.id) == Decimal("10")
        assert await transactions_of(uow_factory) == []

    @pytest.mark.asyncio
    async def test_poll_budget_exhausted(self, uow_factory, settings, seed_ledger, seed_api_key):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        sleep = RecordingSleep()
        adapter = ScriptedAdapter([Pending("IN_QUEUE")], max_poll_attempts=60)
        orchestrator = build(uow_factory, settings, adapter, sleep=sleep)

        with pytest.raises(PollTimeoutError):
            await orchestrator.generate(USER, image_command())

        assert adapter.polls == 60
        assert sleep.calls == [2.0] * 60
        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.FAILED.value
        assert jobs[0].error_message == "Generation timed out"
        assert await balance_of(uow_factory) == Decimal("10")

    @pytest.mark.asyncio
    async def test_transient_poll_errors_consume_attempts(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        adapter = ScriptedAdapter(
            [ProviderNetworkError("503"), ProviderNetworkError("503"), Completed("https://cdn/a.png")],
            max_poll_attempts=3,
        )
        orchestrator = build(uow_factory, settings, adapter)

        result = await orchestrator.generate(USER, image_command())

        assert result.output_url == "https://cdn/a.png"
        assert adapter.polls == 3

    @pytest.mark.asyncio
    async def test_submission_error_fails_job(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        adapter = ScriptedAdapter(submit_error=SubmissionError("Fal.ai error: 422"))
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(SubmissionError, match="Fal.ai error: 422"):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.FAILED.value
        assert jobs[0].error_message == "Fal.ai error: 422"
        assert adapter.polls == 0

    @pytest.mark.asyncio
    async def test_network_error_on_submit_becomes_submission_error(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        adapter = ScriptedAdapter(submit_error=ProviderNetworkError("Request timeout: read"))
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(SubmissionError):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.FAILED.value


class TestUnexpectedErrors:
    """Errors outside the adapter contract still resolve the pending row."""

    @pytest.mark.asyncio
    async def test_non_json_submit_body_fails_job(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        stub = ProviderStub()
        stub.add(
            "POST",
            "https://queue.fal.test/fal-ai/imagen4/preview/ultra",
            httpx.Response(200, text="<html>gateway</html>"),
        )
        adapter = FalImageAdapter(
            base_url="https://queue.fal.test",
            poll_interval_seconds=2.0,
            max_poll_attempts=2,
            client=stub.client(),
        )
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(SubmissionError, match="Invalid JSON response"):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert [job.status for job in jobs] == [GenerationStatus.FAILED.value]
        assert await balance_of(uow_factory) == Decimal("10")

    @pytest.mark.asyncio
    async def test_non_json_status_body_times_out(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        stub = ProviderStub()
        stub.add(
            "POST",
            "https://queue.fal.test/fal-ai/imagen4/preview/ultra",
            httpx.Response(200, json={"request_id": "r1"}),
        )
        stub.add(
            "GET",
            "https://queue.fal.test/fal-ai/imagen4/preview/ultra/requests/r1/status",
            httpx.Response(200, text="<html>gateway</html>"),
        )
        adapter = FalImageAdapter(
            base_url="https://queue.fal.test",
            poll_interval_seconds=2.0,
            max_poll_attempts=2,
            client=stub.client(),
        )
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(PollTimeoutError, match="Generation timeout"):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert [job.status for job in jobs] == [GenerationStatus.FAILED.value]
        assert jobs[0].error_message == "Generation timeout"

    @pytest.mark.asyncio
    async def test_unexpected_poll_error_fails_job(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        adapter = ScriptedAdapter([AttributeError("'list' object has no attribute 'get'")])
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(ProviderFailure, match="Unexpected error"):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.FAILED.value
        assert "has no attribute" in jobs[0].error_message
        assert await balance_of(uow_factory) == Decimal("10")

    @pytest.mark.asyncio
    async def test_unexpected_submit_error_fails_job(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        adapter = ScriptedAdapter(submit_error=KeyError("request_id"))
        orchestrator = build(uow_factory, settings, adapter)

        with pytest.raises(SubmissionError, match="Submission failed"):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_empty_output_url_fails_job_without_billing(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        key = await seed_api_key("10")
        orchestrator = build(uow_factory, settings, ScriptedAdapter([Completed("")]))

        with pytest.raises(ProviderFailure):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.FAILED.value
        assert await balance_of(uow_factory) == Decimal("10")
        assert await credits_of(uow_factory, key.id) == Decimal("10")
        assert await transactions_of(uow_factory) == []

    @pytest.mark.asyncio
    async def test_sweep_fails_job_on_unexpected_error_and_continues(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        adapter = ScriptedAdapter([ValueError("Expecting value: line 1 column 1")])
        orchestrator = build(uow_factory, settings, adapter)
        first = await orchestrator.submit_detached(USER, image_command())
        second = await orchestrator.submit_detached(USER, image_command())

        summary = await orchestrator.reconcile_pending()

        assert summary.failed == 2
        for job_id in (first.job_id, second.job_id):
            job = await load_job(uow_factory, GenerationKind.IMAGE, job_id)
            assert job.status == GenerationStatus.FAILED.value
        assert (await orchestrator.reconcile_pending()).job_ids == []


class TestExistingJob:
    @pytest.mark.asyncio
    async def test_existing_row_reused(self, uow_factory, settings, seed_ledger, seed_api_key):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        job = await seed_pending_job(uow_factory)
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        result = await orchestrator.generate(USER, image_command(existing_job_id=job.id))

        assert result.job_id == job.id
        assert await count_rows(uow_factory, ImageGeneration) == 1
        stored = await load_job(uow_factory, GenerationKind.IMAGE, job.id)
        assert stored.prompt == "a red cube"
        assert stored.status == GenerationStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_finalized_job_rejected_without_second_charge(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        job = await seed_pending_job(uow_factory)
        adapter = ScriptedAdapter()
        orchestrator = build(uow_factory, settings, adapter)
        await orchestrator.generate(USER, image_command(existing_job_id=job.id))

        with pytest.raises(JobAlreadyFinalizedError):
            await orchestrator.generate(USER, image_command(existing_job_id=job.id))

        assert len(adapter.submitted) == 1
        assert len(await transactions_of(uow_factory)) == 1
        assert await balance_of(uow_factory) == Decimal("8.5")

    @pytest.mark.asyncio
    async def test_unknown_id_creates_row_with_that_id(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        job_id = uuid4()
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        result = await orchestrator.generate(USER, image_command(existing_job_id=job_id))

        assert result.job_id == job_id

    @pytest.mark.asyncio
    async def test_other_users_job_not_found(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        job = await seed_pending_job(uow_factory, user_id="someone-else")
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        with pytest.raises(JobNotFoundError):
            await orchestrator.generate(USER, image_command(existing_job_id=job.id))

        stored = await load_job(uow_factory, GenerationKind.IMAGE, job.id)
        assert stored.status == GenerationStatus.PENDING.value


class DrainingAdapter(ScriptedAdapter):
    """Runs a coroutine (simulating a concurrent writer) before its first poll."""

    def __init__(self, before_poll, **kwargs):
        super().__init__(**kwargs)
        self.before_poll = before_poll

    async def poll(self, handle, api_key):
        if self.polls == 0:
            await self.before_poll()
        return await super().poll(handle, api_key)


class TestReconciliation:
    """Billing commit after provider success."""

    @pytest.mark.asyncio
    async def test_balance_drained_during_job(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        key = await seed_api_key("10")

        async def spend_elsewhere():
            async with await uow_factory() as uow:
                ledger = await uow.user_credits.get_by_user(USER)
                ledger.balance = Decimal("0.5")

        orchestrator = build(uow_factory, settings, DrainingAdapter(spend_elsewhere))

        with pytest.raises(ReconciliationConflictError, match="Insufficient credits at reconciliation"):
            await orchestrator.generate(USER, image_command())

        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.COMPLETED.value
        assert jobs[0].output_url == "https://cdn.example/out.png"
        assert await balance_of(uow_factory) == Decimal("0.5")
        assert await credits_of(uow_factory, key.id) == Decimal("10")
        assert await transactions_of(uow_factory) == []

    @pytest.mark.asyncio
    async def test_key_drained_rolls_back_ledger_debit(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        key = await seed_api_key("10")

        async def drain_key():
            async with await uow_factory() as uow:
                api_key = await uow.api_keys.get_by_id(key.id)
                api_key.credits = Decimal("1.5")

        orchestrator = build(uow_factory, settings, DrainingAdapter(drain_key))

        with pytest.raises(ReconciliationConflictError, match="API key no longer has enough credits"):
            await orchestrator.generate(USER, image_command())

        assert await balance_of(uow_factory) == Decimal("10")
        assert await credits_of(uow_factory, key.id) == Decimal("1.5")
        assert await transactions_of(uow_factory) == []

    @pytest.mark.asyncio
    async def test_ledger_conflict_retried(
        self, uow_factory, settings, seed_ledger, seed_api_key, monkeypatch
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        original = UserCreditsRepository.debit
        calls = []

        async def flaky_debit(self, user_id, amount, expected_balance):
            calls.append(expected_balance)
            if len(calls) == 1:
                return False
            return await original(self, user_id, amount, expected_balance)

        monkeypatch.setattr(UserCreditsRepository, "debit", flaky_debit)
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        await orchestrator.generate(USER, image_command())

        assert len(calls) == 2
        assert await balance_of(uow_factory) == Decimal("8.5")
        assert len(await transactions_of(uow_factory)) == 1

    @pytest.mark.asyncio
    async def test_ledger_conflict_exhausts_retries(
        self, uow_factory, settings, seed_ledger, seed_api_key, monkeypatch
    ):
        await seed_ledger(USER, "10")
        key = await seed_api_key("10")
        calls = []

        async def always_conflicts(self, user_id, amount, expected_balance):
            calls.append(expected_balance)
            return False

        monkeypatch.setattr(UserCreditsRepository, "debit", always_conflicts)
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        with pytest.raises(ReconciliationConflictError, match="changed concurrently"):
            await orchestrator.generate(USER, image_command())

        assert len(calls) == settings.reconciliation_max_retries
        assert await balance_of(uow_factory) == Decimal("10")
        assert await credits_of(uow_factory, key.id) == Decimal("10")
        async with await uow_factory() as uow:
            jobs = await uow.image_generations.list_by_user(USER)
        assert jobs[0].status == GenerationStatus.COMPLETED.value


class TestDetached:
    @pytest.mark.asyncio
    async def test_submit_detached_then_reconcile(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        key = await seed_api_key("10")
        adapter = ScriptedAdapter([Pending("IN_QUEUE"), Completed("https://cdn/d.png")])
        orchestrator = build(uow_factory, settings, adapter)

        submission = await orchestrator.submit_detached(USER, image_command())

        job = await load_job(uow_factory, GenerationKind.IMAGE, submission.job_id)
        assert submission.status == "pending"
        assert job.detached is True
        assert job.request_id == "req-1"
        assert adapter.polls == 0

        first = await orchestrator.reconcile_pending()
        assert (first.pending, first.completed) == (1, 0)
        assert await balance_of(uow_factory) == Decimal("10")

        second = await orchestrator.reconcile_pending()
        assert second.completed == 1
        assert await balance_of(uow_factory) == Decimal("8.5")
        assert await credits_of(uow_factory, key.id) == Decimal("8.5")

        third = await orchestrator.reconcile_pending()
        assert third.job_ids == []
        assert len(await transactions_of(uow_factory)) == 1

    @pytest.mark.asyncio
    async def test_reconcile_failed_job(self, uow_factory, settings, seed_ledger, seed_api_key):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        orchestrator = build(uow_factory, settings, ScriptedAdapter([Failed("content policy")]))
        submission = await orchestrator.submit_detached(USER, image_command())

        summary = await orchestrator.reconcile_pending()

        assert summary.failed == 1
        job = await load_job(uow_factory, GenerationKind.IMAGE, submission.job_id)
        assert job.error_message == "content policy"
        assert await balance_of(uow_factory) == Decimal("10")

    @pytest.mark.asyncio
    async def test_reconcile_times_out_stale_job(
        self, uow_factory, settings, seed_ledger, seed_api_key
    ):
        await seed_ledger(USER, "10")
        await seed_api_key("10")
        orchestrator = build(uow_factory, settings, ScriptedAdapter([Pending("IN_QUEUE")]))
        submission = await orchestrator.submit_detached(USER, image_command())
        async with await uow_factory() as uow:
            job = await uow.image_generations.lock_by_id(submission.job_id)
            job.submitted_at = utcnow() - timedelta(hours=1)

        summary = await orchestrator.reconcile_pending()

        assert summary.failed == 1
        job = await load_job(uow_factory, GenerationKind.IMAGE, submission.job_id)
        assert job.status == GenerationStatus.FAILED.value
        assert job.error_message == "Generation timed out"

    @pytest.mark.asyncio
    async def test_attached_jobs_not_swept(self, uow_factory, settings):
        await seed_pending_job(uow_factory)
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        summary = await orchestrator.reconcile_pending()

        assert summary.job_ids == []


class TestGetJob:
    @pytest.mark.asyncio
    async def test_owner_can_read(self, uow_factory, settings):
        job = await seed_pending_job(uow_factory)
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        found = await orchestrator.get_job(USER, GenerationKind.IMAGE, job.id)

        assert found.id == job.id

    @pytest.mark.asyncio
    async def test_other_user_gets_not_found(self, uow_factory, settings):
        job = await seed_pending_job(uow_factory)
        orchestrator = build(uow_factory, settings, ScriptedAdapter())

        with pytest.raises(JobNotFoundError):
            await orchestrator.get_job("intruder", GenerationKind.IMAGE, job.id)
