from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.database.models import PipelineFindingRecord
from caseflow.models.findings import Finding
from caseflow.repositories.base_repository import BaseRepository


def _to_domain(record: PipelineFindingRecord) -> Finding:
    return Finding(
        id=record.id,
        firm_id=record.firm_id,
        pipeline_run_id=record.pipeline_run_id,
        matter_id=record.matter_id,
        document_id=record.document_id,
        category_key=record.category_key,
        field_key=record.field_key,
        label=record.label,
        value=record.value,
        source_quote=record.source_quote,
        char_start=record.char_start,
        char_end=record.char_end,
        confidence=float(record.confidence),
        impact=record.impact,
        status=record.status,
        existing_value=record.existing_value,
        resolved_at=record.resolved_at,
        created_at=record.created_at,
    )


def _to_row(finding: Finding) -> dict:
    row = finding.model_dump(exclude={"impact", "status"})
    row["impact"] = finding.impact.value
    row["status"] = finding.status.value
    return row


class FindingRepository(BaseRepository[PipelineFindingRecord]):
    """Repository for pipeline findings of one firm."""

    def __init__(self, session: AsyncSession, firm_id: UUID):
        super().__init__(session, PipelineFindingRecord, firm_id)

    async def get(self, finding_id: UUID) -> Optional[Finding]:
        record = await self.get_record(finding_id)
        return _to_domain(record) if record else None

    async def add_many(self, findings: Sequence[Finding]) -> List[Finding]:
        if findings:
            await self.add_records([_to_row(finding) for finding in findings])
        return list(findings)

    async def save_resolution(self, finding: Finding) -> Finding:
        """Persist the status transition of a resolved finding."""
        record = await self.update_record(
            finding.id, status=finding.status.value, resolved_at=finding.resolved_at
        )
        if record is None:
            raise ValueError(f"Finding {finding.id} not found")
        return finding

    async def list_for_run(self, run_id: UUID) -> List[Finding]:
        records = await self.list_records(
            filters={"pipeline_run_id": run_id}, order_by=PipelineFindingRecord.created_at
        )
        return [_to_domain(record) for record in records]

    async def list_for_matter(self, matter_id: UUID) -> List[Finding]:
        records = await self.list_records(
            filters={"matter_id": matter_id}, order_by=PipelineFindingRecord.created_at
        )
        return [_to_domain(record) for record in records]
