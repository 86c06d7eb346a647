"""Stage handlers for the document pipeline.

Each handler receives the run's :class:`StageContext`, does the stage's
work and returns whether the stage completed or was skipped. A handler
signals failure by raising; the orchestrator turns any exception into a
failed stage. Values produced for later stages (text, taxonomy pack,
candidates, findings) travel in the context, not through storage.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable, Dict, List, Optional

from caseflow.core.exceptions import ModelCallError, StageError
from caseflow.core.llm_client import ChatMessage, ModelCallClient, ModelCallRequest
from caseflow.core.unit_of_work import UnitOfWorkFactory
from caseflow.models.actions import PipelineAction
from caseflow.models.base import utcnow
from caseflow.models.documents import SourceDocument
from caseflow.models.findings import Finding, FindingCandidate
from caseflow.models.pipeline import PipelineRun, PipelineStage
from caseflow.models.risk import MatterRiskAssessment
from caseflow.models.taxonomy import PromptTemplateType, TaxonomyPack
from caseflow.prompts.pipeline_prompts import (
    DEFAULT_MODEL,
    OCR_MAX_TOKENS,
    OCR_SYSTEM_PROMPT,
    OCR_USER_PROMPT,
    PromptSpec,
    build_classification_prompt,
    build_extraction_prompt,
)
from caseflow.services.extraction.chunking import chunk_text_overlapping
from caseflow.services.extraction.findings import RawFinding, build_candidates, parse_extraction_output
from caseflow.services.extraction.reconciliation import ReconciliationEngine, existing_values_from_findings
from caseflow.services.pipeline.collaborators import ActionSink, DocumentSource
from caseflow.services.risk.risk_scorer import calculate_risk_score
from caseflow.services.triggers.action_builder import build_run_actions
from caseflow.services.triggers.trigger_engine import build_candidates_map, process_triggers
from caseflow.utils.json_parser import parse_json_safely
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

EXTRACTION_MAX_RETRIES = 1


@dataclass(frozen=True)
class StageConfig:
    timeout_ms: int


STAGE_CONFIG: Dict[PipelineStage, StageConfig] = {
    PipelineStage.INTAKE: StageConfig(timeout_ms=30_000),
    PipelineStage.OCR: StageConfig(timeout_ms=300_000),
    PipelineStage.CLASSIFY: StageConfig(timeout_ms=300_000),
    PipelineStage.EXTRACT: StageConfig(timeout_ms=300_000),
    PipelineStage.RECONCILE: StageConfig(timeout_ms=60_000),
    PipelineStage.ACTIONS: StageConfig(timeout_ms=60_000),
}


class StageOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass
class StageContext:
    """In-memory state handed from one stage to the next within a run."""

    run: PipelineRun
    document: Optional[SourceDocument] = None
    text: Optional[str] = None
    pack: Optional[TaxonomyPack] = None
    pack_loaded: bool = False
    candidates: List[FindingCandidate] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    actions: List[PipelineAction] = field(default_factory=list)


@dataclass(frozen=True)
class StageSettings:
    pipeline_model: str = DEFAULT_MODEL
    ocr_model: str = DEFAULT_MODEL
    chunk_size: int = 2000
    chunk_overlap: int = 400
    classification_sample_chars: int = 2000
    low_classification_confidence: float = 0.6


def _messages(prompt: PromptSpec) -> List[ChatMessage]:
    return [
        ChatMessage(role="system", content=prompt.system_prompt),
        ChatMessage(role="user", content=prompt.user_prompt),
    ]


def _coerce_confidence(value) -> Optional[float]:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    if confidence != confidence:  # NaN
        return None
    return min(max(confidence, 0.0), 1.0)


class PipelineStages:
    """Handlers for the six stages, sharing the run's collaborators."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        llm_client: ModelCallClient,
        document_source: DocumentSource,
        action_sink: ActionSink,
        reconciliation_engine: Optional[ReconciliationEngine] = None,
        settings: Optional[StageSettings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.uow_factory = uow_factory
        self.llm_client = llm_client
        self.document_source = document_source
        self.action_sink = action_sink
        self.reconciliation_engine = reconciliation_engine or ReconciliationEngine()
        self.settings = settings or StageSettings()
        self._today = today or date.today

    async def _call_model(self, ctx: StageContext, stage: PipelineStage, request: ModelCallRequest) -> str:
        request.timeout_ms = request.timeout_ms or STAGE_CONFIG[stage].timeout_ms
        result = await self.llm_client.call(request)
        ctx.run.total_tokens_used += result.tokens_used
        return result.content

    async def _load_pack(self, ctx: StageContext) -> Optional[TaxonomyPack]:
        if not ctx.pack_loaded:
            async with self.uow_factory(ctx.run.firm_id) as uow:
                ctx.pack = await uow.taxonomy.load_pack_for_matter(ctx.run.matter_id)
            ctx.pack_loaded = True
        return ctx.pack

    # ------------------------------------------------------------------
    # intake
    # ------------------------------------------------------------------

    async def intake(self, ctx: StageContext) -> StageOutcome:
        run = ctx.run
        document = await self.document_source.get_document(run.firm_id, run.document_id)
        if document is None:
            raise StageError(PipelineStage.INTAKE.value, f"Document {run.document_id} not found")
        if not document.content and not document.has_text:
            raise StageError(PipelineStage.INTAKE.value, f"Document {run.document_id} has no content")

        digest_source = document.content if document.content else document.extracted_text.encode("utf-8")
        run.document_hash = hashlib.sha256(digest_source).hexdigest()
        ctx.document = document

        LOGGER.info(
            f"Loaded document {document.filename}",
            extra={"pipeline_run_id": str(run.id), "mime_type": document.mime_type},
        )
        return StageOutcome.COMPLETED

    # ------------------------------------------------------------------
    # ocr
    # ------------------------------------------------------------------

    async def ocr(self, ctx: StageContext) -> StageOutcome:
        document = ctx.document
        if document.has_text:
            ctx.text = document.extracted_text
            return StageOutcome.SKIPPED

        if document.mime_type.startswith("text/"):
            text = document.content.decode("utf-8", errors="replace")
        else:
            text = await self._transcribe(ctx, document)

        if not text or not text.strip():
            raise StageError(PipelineStage.OCR.value, "No text could be extracted from document")

        await self.document_source.save_extracted_text(ctx.run.firm_id, document.id, text)
        ctx.text = text
        return StageOutcome.COMPLETED

    async def _transcribe(self, ctx: StageContext, document: SourceDocument) -> str:
        data_uri = f"data:{document.mime_type};base64,{base64.b64encode(document.content).decode('ascii')}"
        request = ModelCallRequest(
            model=self.settings.ocr_model,
            messages=[
                ChatMessage(role="system", content=OCR_SYSTEM_PROMPT),
                ChatMessage(
                    role="user",
                    content=[
                        {"type": "image_url", "image_url": {"url": data_uri}},
                        {
                            "type": "text",
                            "text": OCR_USER_PROMPT.format(
                                filename=document.filename, mime_type=document.mime_type
                            ),
                        },
                    ],
                ),
            ],
            max_tokens=OCR_MAX_TOKENS,
        )
        return await self._call_model(ctx, PipelineStage.OCR, request)

    # ------------------------------------------------------------------
    # classify
    # ------------------------------------------------------------------

    async def classify(self, ctx: StageContext) -> StageOutcome:
        run = ctx.run
        pack = await self._load_pack(ctx)
        if pack is None or not pack.document_types:
            LOGGER.info("No document types to classify against", extra={"pipeline_run_id": str(run.id)})
            return StageOutcome.SKIPPED

        run.taxonomy_pack_id = pack.id
        prompt = build_classification_prompt(
            pack.document_types,
            ctx.text or "",
            template=pack.template(PromptTemplateType.CLASSIFICATION),
            mime_type=ctx.document.mime_type if ctx.document else None,
            filename=ctx.document.filename if ctx.document else None,
            default_model=self.settings.pipeline_model,
            sample_chars=self.settings.classification_sample_chars,
        )
        request = ModelCallRequest(
            model=prompt.model,
            messages=_messages(prompt),
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
            response_format={"type": "json_object"},
        )

        try:
            content = await self._call_model(ctx, PipelineStage.CLASSIFY, request)
        except ModelCallError as e:
            if not e.is_retryable:
                raise
            LOGGER.warning(
                f"Classification unavailable, continuing without it: {e.message}",
                extra={"pipeline_run_id": str(run.id), "kind": e.kind.value},
            )
            return StageOutcome.COMPLETED

        parsed = parse_json_safely(content)
        if not isinstance(parsed, dict):
            raise StageError(PipelineStage.CLASSIFY.value, "Classification response is not a JSON object")

        doc_type = parsed.get("documentType")
        if not isinstance(doc_type, str) or not doc_type.strip():
            LOGGER.warning(
                "Classification response has no document type",
                extra={"pipeline_run_id": str(run.id), "document_type": repr(doc_type)},
            )
            return StageOutcome.COMPLETED

        run.classified_doc_type = doc_type.strip()
        run.classification_confidence = _coerce_confidence(parsed.get("confidence"))
        if run.classification_confidence is None:
            run.classification_confidence = 0.0

        if run.classification_confidence < self.settings.low_classification_confidence:
            LOGGER.warning(
                f"Low classification confidence for {run.classified_doc_type}",
                extra={"pipeline_run_id": str(run.id), "confidence": run.classification_confidence},
            )
        return StageOutcome.COMPLETED

    # ------------------------------------------------------------------
    # extract
    # ------------------------------------------------------------------

    async def extract(self, ctx: StageContext) -> StageOutcome:
        run = ctx.run
        pack = await self._load_pack(ctx)
        if pack is None:
            return StageOutcome.SKIPPED

        categories = pack.active_categories(run.classified_doc_type)
        if not any(category.fields for category in categories):
            LOGGER.info("No fields to extract", extra={"pipeline_run_id": str(run.id)})
            return StageOutcome.SKIPPED

        chunks = chunk_text_overlapping(ctx.text or "", self.settings.chunk_size, self.settings.chunk_overlap)
        template = pack.template(PromptTemplateType.EXTRACTION)
        raw_findings: List[RawFinding] = []
        failed_chunks = 0

        for chunk in chunks:
            prompt = build_extraction_prompt(
                categories,
                chunk.text,
                chunk.index,
                len(chunks),
                run.classified_doc_type,
                template=template,
                default_model=self.settings.pipeline_model,
            )
            request = ModelCallRequest(
                model=prompt.model,
                messages=_messages(prompt),
                temperature=prompt.temperature,
                max_tokens=prompt.max_tokens,
                response_format={"type": "json_object"},
                max_retries=EXTRACTION_MAX_RETRIES,
            )

            try:
                content = await self._call_model(ctx, PipelineStage.EXTRACT, request)
            except ModelCallError as e:
                failed_chunks += 1
                LOGGER.warning(
                    f"Chunk {chunk.index + 1}/{len(chunks)} failed: {e.message}",
                    extra={"pipeline_run_id": str(run.id), "kind": e.kind.value},
                )
                continue

            parsed = parse_extraction_output(content, chunk.index)
            if parsed is None:
                failed_chunks += 1
                LOGGER.warning(
                    f"Chunk {chunk.index + 1}/{len(chunks)} returned malformed JSON",
                    extra={"pipeline_run_id": str(run.id)},
                )
                continue
            raw_findings.extend(parsed)

        if chunks and failed_chunks == len(chunks):
            raise StageError(PipelineStage.EXTRACT.value, f"All {len(chunks)} chunks failed extraction")

        ctx.candidates = build_candidates(raw_findings, pack.field_map, chunks)
        LOGGER.info(
            f"Extracted {len(ctx.candidates)} candidates from {len(chunks)} chunks",
            extra={"pipeline_run_id": str(run.id), "failed_chunks": failed_chunks},
        )
        return StageOutcome.COMPLETED

    # ------------------------------------------------------------------
    # reconcile
    # ------------------------------------------------------------------

    async def reconcile(self, ctx: StageContext) -> StageOutcome:
        run = ctx.run
        now = utcnow()

        async with self.uow_factory(run.firm_id) as uow:
            matter_findings = await uow.findings.list_for_matter(run.matter_id)
            existing_values = existing_values_from_findings(matter_findings, exclude_run_id=run.id)

            findings = self.reconciliation_engine.reconcile(
                ctx.candidates,
                existing_values,
                pack=ctx.pack,
                firm_id=run.firm_id,
                pipeline_run_id=run.id,
                matter_id=run.matter_id,
                document_id=run.document_id,
                now=now,
            )
            await uow.findings.add_many(findings)
            run.findings_count = len(findings)
            await uow.runs.save(run)

            risk = calculate_risk_score(await uow.findings.list_for_matter(run.matter_id))
            await uow.risk.upsert(
                MatterRiskAssessment(
                    matter_id=run.matter_id,
                    firm_id=run.firm_id,
                    score=risk.score,
                    factors=risk.factors,
                    assessed_at=now,
                )
            )
            await uow.commit()

        ctx.findings = findings
        LOGGER.info(
            f"Stored {len(findings)} findings, matter risk score {risk.score}",
            extra={"pipeline_run_id": str(run.id)},
        )
        return StageOutcome.COMPLETED

    # ------------------------------------------------------------------
    # actions
    # ------------------------------------------------------------------

    async def actions(self, ctx: StageContext) -> StageOutcome:
        run = ctx.run
        triggers = ctx.pack.action_triggers if ctx.pack else []
        matches = process_triggers(triggers, build_candidates_map(ctx.findings), today=self._today())
        actions = build_run_actions(run, ctx.findings, matches, self.settings.low_classification_confidence)

        async with self.uow_factory(run.firm_id) as uow:
            await uow.actions.add_many(actions)
            run.actions_count = len(actions)
            await uow.runs.save(run)
            await uow.commit()

        ctx.actions = actions
        await self.action_sink.submit(run.firm_id, actions)
        return StageOutcome.COMPLETED
