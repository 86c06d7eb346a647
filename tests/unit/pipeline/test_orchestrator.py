import base64
import hashlib
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from caseflow.core.exceptions import (
    InvalidRunTransitionError,
    ModelCallError,
    ModelCallErrorKind,
    PipelineError,
    PipelineRunNotFoundError,
)
from caseflow.models.actions import ActionStatus
from caseflow.models.documents import SourceDocument
from caseflow.models.findings import FindingStatus, Impact
from caseflow.models.pipeline import PIPELINE_STAGES, PipelineStage, RunStatus, StageStatus
from caseflow.models.triggers import ActionType
from caseflow.prompts.pipeline_prompts import OCR_MAX_TOKENS
from caseflow.services.pipeline.orchestrator import PipelineOrchestrator, cancel_run, stage_handlers
from caseflow.services.pipeline.stages import PipelineStages, StageOutcome, StageSettings

from conftest import (
    DOCUMENT_ID,
    FIRM_ID,
    MATTER_ID,
    FakeDocumentSource,
    FakeRunRepository,
    ScriptedModelClient,
    make_finding,
    make_pack,
    make_run,
)

LARGE_DEMAND_TRIGGER = {
    "name": "Large demand",
    "triggerCondition": {"fieldKey": "demand_amount", "operator": "gt", "value": 100000},
    "actionTemplate": {"actionType": "create_task", "title": "Review large demand", "priority": 1},
}

CLASSIFIED = json.dumps({"documentType": "demand_letter", "confidence": 0.95})

EXTRACTED = json.dumps(
    {
        "findings": [
            {
                "categoryKey": "parties",
                "fieldKey": "claimant_name",
                "value": "Jane Roe",
                "sourceQuote": "Claimant Jane Roe",
                "confidence": 0.95,
            },
            {
                "categoryKey": "damages",
                "fieldKey": "demand_amount",
                "value": "$137,500",
                "sourceQuote": "demands $137,500",
                "confidence": 0.7,
            },
        ]
    }
)


def _queue(store, **overrides):
    run = make_run(**overrides)
    store.runs[run.id] = run.model_copy(deep=True)
    return run


def _statuses(run):
    return {stage.value: state.status.value for stage, state in run.stage_statuses.items()}


@pytest.fixture
def build_pipeline(uow_factory, document_source, action_sink, today):
    def factory(responses=(), settings=None, source=None):
        llm = ScriptedModelClient(responses)
        stages = PipelineStages(
            uow_factory,
            llm,
            source or document_source,
            action_sink,
            settings=settings,
            today=lambda: today,
        )
        return PipelineOrchestrator(uow_factory, stage_handlers(stages)), llm

    return factory


class TestPipelineRunEndToEnd:
    @pytest.mark.asyncio
    async def test_full_run(self, store, build_pipeline, document_source, action_sink):
        pack = make_pack(triggers=[LARGE_DEMAND_TRIGGER])
        store.packs_by_matter[MATTER_ID] = pack
        queued = _queue(store)
        orchestrator, llm = build_pipeline([CLASSIFIED, EXTRACTED])

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.COMPLETED
        assert set(_statuses(run).values()) == {"completed"}
        assert run.classified_doc_type == "demand_letter"
        assert run.classification_confidence == 0.95
        assert run.taxonomy_pack_id == pack.id
        assert run.total_tokens_used == 20
        assert run.findings_count == 2
        assert run.actions_count == 1

        content = document_source.documents[DOCUMENT_ID].content
        assert run.document_hash == hashlib.sha256(content).hexdigest()
        assert document_source.saved_text[DOCUMENT_ID] == content.decode("utf-8")

        findings = {f.field_key: f for f in store.findings.values()}
        assert findings["claimant_name"].status == FindingStatus.AUTO_APPLIED
        assert findings["claimant_name"].impact == Impact.HIGH
        assert findings["demand_amount"].status == FindingStatus.PENDING

        assert store.risk[MATTER_ID].score == 20
        assert [a.title for a in action_sink.submitted] == ["Review large demand"]
        assert store.actions[0].status == ActionStatus.PENDING

        stored = store.runs[queued.id]
        assert stored.status == RunStatus.COMPLETED
        assert stored.completed_at is not None

        assert llm.requests[0].response_format == {"type": "json_object"}
        assert llm.requests[1].max_retries == 1

    @pytest.mark.asyncio
    async def test_existing_value_produces_conflict_action(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack(triggers=[LARGE_DEMAND_TRIGGER])
        prior = make_finding(
            value="$90,000",
            status=FindingStatus.ACCEPTED,
            pipeline_run_id=uuid4(),
            created_at=datetime(2024, 12, 1, tzinfo=timezone.utc),
        )
        store.findings[prior.id] = prior
        queued = _queue(store)
        orchestrator, _ = build_pipeline([CLASSIFIED, EXTRACTED])

        run = await orchestrator.run(FIRM_ID, queued.id)

        conflict = next(f for f in store.findings.values() if f.pipeline_run_id == run.id and f.field_key == "demand_amount")
        assert conflict.status == FindingStatus.CONFLICT
        assert conflict.existing_value == "$90,000"
        assert run.actions_count == 2
        assert ActionType.FLAG_RISK in {a.action_type for a in store.actions}

    @pytest.mark.asyncio
    async def test_without_pack_model_stages_are_skipped(self, store, build_pipeline, action_sink):
        queued = _queue(store)
        orchestrator, llm = build_pipeline()

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.COMPLETED
        assert _statuses(run) == {
            "intake": "completed",
            "ocr": "completed",
            "classify": "skipped",
            "extract": "skipped",
            "reconcile": "completed",
            "actions": "completed",
        }
        assert run.findings_count == 0
        assert llm.requests == []
        assert action_sink.submitted == []

    @pytest.mark.asyncio
    async def test_no_active_fields_skips_extraction(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack()
        queued = _queue(store)
        orchestrator, llm = build_pipeline([json.dumps({"documentType": "medical_record", "confidence": 0.9})])

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.stage(PipelineStage.EXTRACT).status == StageStatus.SKIPPED
        assert len(llm.requests) == 1
        assert store.pack_loads == 1


class TestStageFailures:
    @pytest.mark.asyncio
    async def test_missing_document_fails_intake(self, store, build_pipeline):
        queued = _queue(store, document_id=uuid4())
        orchestrator, _ = build_pipeline()

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.FAILED
        assert run.stage(PipelineStage.INTAKE).status == StageStatus.FAILED
        assert "not found" in run.error
        assert run.stage(PipelineStage.OCR).status == StageStatus.QUEUED
        assert store.runs[queued.id].status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_permanent_classification_error_stops_the_run(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack()
        queued = _queue(store)
        error = ModelCallError("bad request", ModelCallErrorKind.API_ERROR, status_code=400)
        orchestrator, llm = build_pipeline([error])

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.FAILED
        assert run.error == "api_error: bad request"
        assert run.stage(PipelineStage.CLASSIFY).status == StageStatus.FAILED
        assert run.stage(PipelineStage.EXTRACT).status == StageStatus.QUEUED
        assert len(llm.requests) == 1

    @pytest.mark.asyncio
    async def test_unavailable_classifier_does_not_block_extraction(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack()
        queued = _queue(store)
        timeout = ModelCallError("timed out", ModelCallErrorKind.TIMEOUT)
        orchestrator, _ = build_pipeline([timeout, EXTRACTED])

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.COMPLETED
        assert run.stage(PipelineStage.CLASSIFY).status == StageStatus.COMPLETED
        assert run.classified_doc_type is None
        assert run.findings_count == 2

    @pytest.mark.asyncio
    async def test_non_object_classification_fails(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack()
        queued = _queue(store)
        orchestrator, _ = build_pipeline(['["demand_letter"]'])

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.stage(PipelineStage.CLASSIFY).status == StageStatus.FAILED
        assert "not a JSON object" in run.error

    @pytest.mark.asyncio
    async def test_all_chunks_failing_fails_extraction(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack()
        queued = _queue(store)
        orchestrator, _ = build_pipeline([CLASSIFIED, "no json here"])

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.stage(PipelineStage.EXTRACT).status == StageStatus.FAILED
        assert run.error == "All 1 chunks failed extraction"
        assert store.findings == {}

    @pytest.mark.asyncio
    async def test_partial_chunk_failure_is_tolerated(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack()
        queued = _queue(store)
        orchestrator, llm = build_pipeline(
            [CLASSIFIED, ModelCallError("overloaded", ModelCallErrorKind.RETRIES_EXHAUSTED), EXTRACTED],
            settings=StageSettings(chunk_size=40, chunk_overlap=0),
        )

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.COMPLETED
        assert len(llm.requests) == 3
        assert run.findings_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_stage(self, store, uow_factory):
        queued = _queue(store)

        async def ok(ctx):
            return StageOutcome.COMPLETED

        async def boom(ctx):
            raise RuntimeError("disk on fire")

        handlers = {stage: ok for stage in PIPELINE_STAGES}
        handlers[PipelineStage.OCR] = boom

        run = await PipelineOrchestrator(uow_factory, handlers).run(FIRM_ID, queued.id)

        assert run.status == RunStatus.FAILED
        assert run.error == "disk on fire"
        assert run.stage(PipelineStage.INTAKE).status == StageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_stage_boundary_write_leaves_run_failed(self, store, uow_factory, monkeypatch):
        queued = _queue(store)
        original_save = FakeRunRepository.save
        saves = []

        async def flaky_save(repository, run):
            saves.append(run.status)
            if len(saves) == 2:
                raise RuntimeError("db connection lost")
            return await original_save(repository, run)

        monkeypatch.setattr(FakeRunRepository, "save", flaky_save)

        async def ok(ctx):
            return StageOutcome.COMPLETED

        orchestrator = PipelineOrchestrator(uow_factory, {stage: ok for stage in PIPELINE_STAGES})

        with pytest.raises(RuntimeError, match="db connection lost"):
            await orchestrator.run(FIRM_ID, queued.id)

        stored = store.runs[queued.id]
        assert stored.status == RunStatus.FAILED
        assert stored.error == "db connection lost"
        assert stored.completed_at is not None
        assert stored.stage(PipelineStage.INTAKE).status == StageStatus.COMPLETED
        assert stored.stage(PipelineStage.OCR).status == StageStatus.QUEUED

    @pytest.mark.asyncio
    async def test_write_failure_while_stage_running_fails_that_stage(self, store, uow_factory, monkeypatch):
        queued = _queue(store)
        original_save = FakeRunRepository.save
        saves = []

        async def flaky_save(repository, run):
            saves.append(run.status)
            if len(saves) == 1:
                raise RuntimeError("db connection lost")
            return await original_save(repository, run)

        monkeypatch.setattr(FakeRunRepository, "save", flaky_save)

        async def ok(ctx):
            return StageOutcome.COMPLETED

        orchestrator = PipelineOrchestrator(uow_factory, {stage: ok for stage in PIPELINE_STAGES})

        with pytest.raises(RuntimeError):
            await orchestrator.run(FIRM_ID, queued.id)

        stored = store.runs[queued.id]
        assert stored.status == RunStatus.FAILED
        assert stored.stage(PipelineStage.INTAKE).status == StageStatus.FAILED
        assert stored.stage(PipelineStage.INTAKE).error == "db connection lost"

    @pytest.mark.asyncio
    async def test_original_error_surfaces_when_failure_cannot_be_recorded(self, store, uow_factory, monkeypatch):
        queued = _queue(store)

        async def broken_save(repository, run):
            raise RuntimeError("db connection lost")

        monkeypatch.setattr(FakeRunRepository, "save", broken_save)

        async def ok(ctx):
            return StageOutcome.COMPLETED

        orchestrator = PipelineOrchestrator(uow_factory, {stage: ok for stage in PIPELINE_STAGES})

        with pytest.raises(RuntimeError, match="db connection lost"):
            await orchestrator.run(FIRM_ID, queued.id)

        assert store.runs[queued.id].status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_non_string_document_type_is_not_a_classification(self, store, build_pipeline):
        store.packs_by_matter[MATTER_ID] = make_pack()
        queued = _queue(store)
        orchestrator, _ = build_pipeline([json.dumps({"documentType": 42, "confidence": 0.9}), EXTRACTED])

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.COMPLETED
        assert run.classified_doc_type is None
        assert run.classification_confidence is None


class TestOcrStage:
    @pytest.mark.asyncio
    async def test_existing_text_skips_ocr(self, store, build_pipeline):
        source = FakeDocumentSource(
            {
                DOCUMENT_ID: SourceDocument(
                    id=DOCUMENT_ID, filename="letter.pdf", mime_type="application/pdf", extracted_text="Already read"
                )
            }
        )
        queued = _queue(store)
        orchestrator, _ = build_pipeline(source=source)

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.stage(PipelineStage.OCR).status == StageStatus.SKIPPED
        assert run.document_hash == hashlib.sha256(b"Already read").hexdigest()
        assert source.saved_text == {}

    @pytest.mark.asyncio
    async def test_binary_document_is_transcribed(self, store, build_pipeline):
        pdf = b"%PDF-1.4 scanned"
        source = FakeDocumentSource(
            {DOCUMENT_ID: SourceDocument(id=DOCUMENT_ID, filename="scan.pdf", mime_type="application/pdf", content=pdf)}
        )
        queued = _queue(store)
        orchestrator, llm = build_pipeline(["Transcribed letter text"], source=source)

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.COMPLETED
        assert source.saved_text[DOCUMENT_ID] == "Transcribed letter text"
        request = llm.requests[0]
        assert request.max_tokens == OCR_MAX_TOKENS
        image_part = request.messages[1].content[0]
        assert image_part["image_url"]["url"] == "data:application/pdf;base64," + base64.b64encode(pdf).decode()

    @pytest.mark.asyncio
    async def test_empty_transcription_fails(self, store, build_pipeline):
        source = FakeDocumentSource(
            {DOCUMENT_ID: SourceDocument(id=DOCUMENT_ID, filename="blank.png", mime_type="image/png", content=b"png")}
        )
        queued = _queue(store)
        orchestrator, _ = build_pipeline(["   "], source=source)

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.stage(PipelineStage.OCR).status == StageStatus.FAILED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_running_run_stops_at_next_stage_boundary(self, store, uow_factory):
        queued = _queue(store)
        called = []
        orchestrator = None

        async def intake(ctx):
            called.append("intake")
            await orchestrator.request_cancellation(FIRM_ID, ctx.run.id)
            return StageOutcome.COMPLETED

        async def other(ctx):
            called.append("other")
            return StageOutcome.COMPLETED

        handlers = {stage: other for stage in PIPELINE_STAGES}
        handlers[PipelineStage.INTAKE] = intake
        orchestrator = PipelineOrchestrator(uow_factory, handlers)

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.CANCELLED
        assert called == ["intake"]
        assert run.stage(PipelineStage.INTAKE).status == StageStatus.COMPLETED
        assert run.stage(PipelineStage.OCR).status == StageStatus.QUEUED
        assert store.runs[queued.id].status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_queued_run_is_cancelled_immediately(self, store, build_pipeline):
        queued = _queue(store)
        orchestrator, llm = build_pipeline()

        cancelled = await orchestrator.request_cancellation(FIRM_ID, queued.id)
        run = await orchestrator.run(FIRM_ID, queued.id)

        assert cancelled.status == RunStatus.CANCELLED
        assert run.status == RunStatus.CANCELLED
        assert _statuses(run)["intake"] == "queued"

    @pytest.mark.asyncio
    async def test_cancel_between_load_and_start_wins(self, store, uow_factory):
        queued = _queue(store)
        called = []
        opened = []

        class CancelFirst:
            """Commits a cancel from another session before this one is used."""

            def __init__(self, uow):
                self.uow = uow

            async def __aenter__(self):
                async with uow_factory(FIRM_ID) as other:
                    await cancel_run(other, queued.id)
                return await self.uow.__aenter__()

            async def __aexit__(self, *exc_info):
                return await self.uow.__aexit__(*exc_info)

        def racing_factory(firm_id):
            opened.append(firm_id)
            uow = uow_factory(firm_id)
            # The worker's second unit of work is the one that starts the run
            return CancelFirst(uow) if len(opened) == 2 else uow

        async def handler(ctx):
            called.append(ctx.run.current_stage)
            return StageOutcome.COMPLETED

        orchestrator = PipelineOrchestrator(racing_factory, {stage: handler for stage in PIPELINE_STAGES})

        run = await orchestrator.run(FIRM_ID, queued.id)

        assert run.status == RunStatus.CANCELLED
        assert called == []
        assert store.runs[queued.id].status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_after_worker_started_only_flags_the_run(self, store, uow_factory):
        queued = _queue(store)
        stale = queued.model_copy(deep=True)
        started = queued.model_copy(deep=True)
        started.start()
        store.runs[queued.id] = started.model_copy(deep=True)

        async with uow_factory(FIRM_ID) as uow:
            uow.runs.get = AsyncMock(side_effect=[stale, started.model_copy(deep=True)])
            run = await cancel_run(uow, queued.id)

        assert run.status == RunStatus.RUNNING
        assert run.cancel_requested is True
        stored = store.runs[queued.id]
        assert stored.status == RunStatus.RUNNING
        assert stored.cancel_requested is True

    @pytest.mark.asyncio
    async def test_finished_run_cannot_be_cancelled(self, store, build_pipeline):
        queued = _queue(store, status=RunStatus.COMPLETED)
        orchestrator, _ = build_pipeline()

        with pytest.raises(InvalidRunTransitionError):
            await orchestrator.request_cancellation(FIRM_ID, queued.id)

    @pytest.mark.asyncio
    async def test_unknown_run(self, build_pipeline):
        orchestrator, _ = build_pipeline()

        with pytest.raises(PipelineRunNotFoundError):
            await orchestrator.request_cancellation(FIRM_ID, uuid4())
        with pytest.raises(PipelineRunNotFoundError):
            await orchestrator.run(FIRM_ID, uuid4())


def test_every_stage_needs_a_handler(uow_factory):
    async def ok(ctx):
        return StageOutcome.COMPLETED

    with pytest.raises(PipelineError):
        PipelineOrchestrator(uow_factory, {PipelineStage.INTAKE: ok})
