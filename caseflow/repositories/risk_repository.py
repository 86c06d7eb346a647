from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.database.models import MatterRiskAssessmentRecord
from caseflow.models.risk import MatterRiskAssessment
from caseflow.repositories.base_repository import BaseRepository


class RiskRepository(BaseRepository[MatterRiskAssessmentRecord]):
    """Latest risk assessment per matter."""

    def __init__(self, session: AsyncSession, firm_id: UUID):
        super().__init__(session, MatterRiskAssessmentRecord, firm_id)

    async def get(self, matter_id: UUID) -> Optional[MatterRiskAssessment]:
        try:
            query = self._scoped(
                select(MatterRiskAssessmentRecord).where(MatterRiskAssessmentRecord.matter_id == matter_id)
            )
            result = await self.session.execute(query)
            record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error retrieving risk assessment for matter {matter_id}: {str(e)}", exc_info=True)
            raise

        if record is None:
            return None
        return MatterRiskAssessment(
            matter_id=record.matter_id,
            firm_id=record.firm_id,
            score=record.score,
            factors=record.factors or [],
            assessed_at=record.assessed_at,
        )

    async def upsert(self, assessment: MatterRiskAssessment) -> MatterRiskAssessment:
        values = {
            "matter_id": assessment.matter_id,
            "firm_id": assessment.firm_id or self.firm_id,
            "score": assessment.score,
            "factors": [factor.model_dump(mode="json", by_alias=True) for factor in assessment.factors],
            "assessed_at": assessment.assessed_at,
        }
        statement = insert(MatterRiskAssessmentRecord).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[MatterRiskAssessmentRecord.matter_id],
            set_={
                "score": statement.excluded.score,
                "factors": statement.excluded.factors,
                "assessed_at": statement.excluded.assessed_at,
            },
        )
        try:
            await self.session.execute(statement)
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error storing risk assessment for matter {assessment.matter_id}: {str(e)}", exc_info=True
            )
            raise
        return assessment
