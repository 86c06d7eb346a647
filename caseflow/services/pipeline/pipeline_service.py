"""Read and review operations on pipeline results for the HTTP layer."""

from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from caseflow.core.exceptions import FindingNotFoundError, FindingResolutionError, PipelineRunNotFoundError
from caseflow.core.unit_of_work import UnitOfWork
from caseflow.models.actions import PipelineAction
from caseflow.models.base import utcnow
from caseflow.models.findings import Finding, FindingStatus
from caseflow.models.pipeline import PipelineRun
from caseflow.models.risk import MatterRiskAssessment
from caseflow.services.extraction.reconciliation import resolve_finding
from caseflow.services.pipeline.orchestrator import cancel_run
from caseflow.services.risk.risk_scorer import calculate_risk_score
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class RunDetails:
    run: PipelineRun
    findings: List[Finding] = field(default_factory=list)
    actions: List[PipelineAction] = field(default_factory=list)


class PipelineService:
    """Pipeline queries and human review, within one unit of work."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def get_run_details(self, run_id: UUID) -> RunDetails:
        run = await self.uow.runs.get(run_id)
        if run is None:
            raise PipelineRunNotFoundError(f"Pipeline run {run_id} not found")
        return RunDetails(
            run=run,
            findings=await self.uow.findings.list_for_run(run_id),
            actions=await self.uow.actions.list_for_run(run_id),
        )

    async def cancel_run(self, run_id: UUID) -> PipelineRun:
        return await cancel_run(self.uow, run_id)

    async def resolve_finding(self, finding_id: UUID, decision: FindingStatus) -> Finding:
        """Accept or reject a pending or conflicting finding.

        The matter's risk score is recomputed in the same transaction.
        Findings of a run that is still executing are read by its later
        stages and cannot be resolved until the run has finished.

        Raises:
            FindingNotFoundError: If the finding does not exist
            FindingResolutionError: If the transition is not allowed or
                the finding's run is still executing
        """
        finding = await self.uow.findings.get(finding_id)
        if finding is None:
            raise FindingNotFoundError(f"Finding {finding_id} not found")

        if finding.pipeline_run_id is not None:
            run = await self.uow.runs.get(finding.pipeline_run_id)
            if run is not None and not run.is_terminal:
                raise FindingResolutionError(
                    f"Finding {finding_id} belongs to run {run.id} which is still {run.status.value}"
                )

        now = utcnow()
        resolved = resolve_finding(finding, decision, now=now)
        await self.uow.findings.save_resolution(resolved)

        if resolved.matter_id is not None:
            risk = calculate_risk_score(await self.uow.findings.list_for_matter(resolved.matter_id))
            await self.uow.risk.upsert(
                MatterRiskAssessment(
                    matter_id=resolved.matter_id,
                    firm_id=self.uow.firm_id,
                    score=risk.score,
                    factors=risk.factors,
                    assessed_at=now,
                )
            )
        await self.uow.commit()

        LOGGER.info(
            f"Finding resolved as {resolved.status.value}",
            extra={"finding_id": str(finding_id), "matter_id": str(resolved.matter_id)},
        )
        return resolved

    async def get_matter_risk(self, matter_id: UUID) -> Optional[MatterRiskAssessment]:
        return await self.uow.risk.get(matter_id)
