from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.database.models import PipelineRunRecord
from caseflow.models.pipeline import PipelineRun, RunStatus
from caseflow.repositories.base_repository import BaseRepository


def _to_domain(record: PipelineRunRecord) -> PipelineRun:
    return PipelineRun(
        id=record.id,
        firm_id=record.firm_id,
        matter_id=record.matter_id,
        document_id=record.document_id,
        status=record.status,
        current_stage=record.current_stage,
        stage_statuses=record.stage_statuses or {},
        document_hash=record.document_hash,
        classified_doc_type=record.classified_doc_type,
        classification_confidence=(
            float(record.classification_confidence) if record.classification_confidence is not None else None
        ),
        taxonomy_pack_id=record.taxonomy_pack_id,
        findings_count=record.findings_count,
        actions_count=record.actions_count,
        total_tokens_used=record.total_tokens_used,
        cancel_requested=record.cancel_requested,
        triggered_by=record.triggered_by,
        error=record.error,
        created_at=record.created_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _to_columns(run: PipelineRun) -> dict:
    return {
        "status": run.status.value,
        "current_stage": run.current_stage.value if run.current_stage else None,
        "stage_statuses": {
            stage.value: state.model_dump(mode="json", by_alias=True)
            for stage, state in run.stage_statuses.items()
        },
        "document_hash": run.document_hash,
        "classified_doc_type": run.classified_doc_type,
        "classification_confidence": run.classification_confidence,
        "taxonomy_pack_id": run.taxonomy_pack_id,
        "findings_count": run.findings_count,
        "actions_count": run.actions_count,
        "total_tokens_used": run.total_tokens_used,
        "error": run.error,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
    }


class PipelineRunRepository(BaseRepository[PipelineRunRecord]):
    """Repository for pipeline runs of one firm."""

    def __init__(self, session: AsyncSession, firm_id: UUID):
        super().__init__(session, PipelineRunRecord, firm_id)

    async def get(self, run_id: UUID, fresh: bool = False) -> Optional[PipelineRun]:
        """Load a run; ``fresh`` bypasses rows already loaded in this session."""
        record = await self.get_record(run_id, populate_existing=fresh)
        return _to_domain(record) if record else None

    async def add(self, run: PipelineRun) -> PipelineRun:
        await self.add_record(
            id=run.id,
            firm_id=run.firm_id,
            matter_id=run.matter_id,
            document_id=run.document_id,
            triggered_by=run.triggered_by,
            cancel_requested=run.cancel_requested,
            created_at=run.created_at,
            **_to_columns(run),
        )
        return run

    async def save(self, run: PipelineRun) -> PipelineRun:
        """Write the mutable columns of ``run`` other than ``cancel_requested``.

        Raises:
            ValueError: If the run does not exist for this firm
        """
        record = await self.update_record(run.id, **_to_columns(run))
        if record is None:
            raise ValueError(f"Pipeline run {run.id} not found")
        return run

    async def list_for_document(self, document_id: UUID) -> List[PipelineRun]:
        records = await self.list_records(
            filters={"document_id": document_id}, order_by=PipelineRunRecord.created_at.desc()
        )
        return [_to_domain(record) for record in records]

    async def flag_cancellation(self, run_id: UUID) -> None:
        """Set ``cancel_requested`` without touching any other column.

        ``save`` never writes this flag, so a running orchestrator cannot
        clear a request made while a stage is in flight.
        """
        record = await self.update_record(run_id, cancel_requested=True)
        if record is None:
            raise ValueError(f"Pipeline run {run_id} not found")

    async def save_if_status(self, run: PipelineRun, expected: RunStatus) -> bool:
        """Write ``run`` only if the stored status is still ``expected``.

        Used for the transitions out of ``queued`` that a worker and a cancel
        request can race for. Returns False when the other side won.
        """
        return await self.update_where(run.id, {"status": expected.value}, **_to_columns(run))
