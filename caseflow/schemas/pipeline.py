"""Request and response payloads of the pipeline endpoints."""

from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import UUID

from caseflow.models.actions import PipelineAction
from caseflow.models.base import CamelModel
from caseflow.models.findings import Finding
from caseflow.models.pipeline import PipelineRun, PipelineStage, RunStatus, StageState
from caseflow.models.risk import RiskFactor


class PipelineRunStatus(CamelModel):
    """Run status as read by pollers and UIs."""

    id: UUID
    document_id: UUID
    status: RunStatus
    current_stage: Optional[PipelineStage] = None
    stage_statuses: Dict[PipelineStage, StageState]
    classified_doc_type: Optional[str] = None
    classification_confidence: Optional[float] = None
    findings_count: int = 0
    actions_count: int = 0
    created_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: PipelineRun) -> "PipelineRunStatus":
        return cls.model_validate(run.model_dump(include=set(cls.model_fields)))


class PipelineRunDetailsResponse(CamelModel):
    run: PipelineRunStatus
    findings: List[Finding]
    actions: List[PipelineAction]


class EnqueueRunRequest(CamelModel):
    matter_id: UUID
    document_id: UUID
    triggered_by: Optional[UUID] = None


class ResolveFindingRequest(CamelModel):
    decision: Literal["accepted", "rejected"]


class MatterRiskResponse(CamelModel):
    matter_id: UUID
    score: int
    factors: List[RiskFactor]
    assessed_at: Optional[datetime] = None
