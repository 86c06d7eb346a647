from typing import List, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.database.models import PipelineActionRecord
from caseflow.models.actions import PipelineAction
from caseflow.repositories.base_repository import BaseRepository


class ActionRepository(BaseRepository[PipelineActionRecord]):
    """Repository for actions produced by pipeline runs."""

    def __init__(self, session: AsyncSession, firm_id: UUID):
        super().__init__(session, PipelineActionRecord, firm_id)

    async def add_many(self, actions: Sequence[PipelineAction]) -> List[PipelineAction]:
        rows = []
        for action in actions:
            row = action.model_dump(exclude={"action_type", "status"})
            row["action_type"] = action.action_type.value
            row["status"] = action.status.value
            rows.append(row)

        if rows:
            await self.add_records(rows)
        return list(actions)

    async def list_for_run(self, run_id: UUID) -> List[PipelineAction]:
        records = await self.list_records(
            filters={"pipeline_run_id": run_id}, order_by=PipelineActionRecord.priority
        )
        return [
            PipelineAction(
                id=record.id,
                firm_id=record.firm_id,
                pipeline_run_id=record.pipeline_run_id,
                matter_id=record.matter_id,
                action_type=record.action_type,
                title=record.title,
                description=record.description,
                priority=record.priority,
                status=record.status,
                is_deterministic=record.is_deterministic,
                action_payload=record.action_payload,
                trigger_finding_id=record.trigger_finding_id,
                trigger_rule_id=record.trigger_rule_id,
                created_at=record.created_at,
            )
            for record in records
        ]
