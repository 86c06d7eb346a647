"""Pipeline run state.

A :class:`PipelineRun` records one pass of a document through the six
ordered stages. The transition methods below are the only way its status
fields change; the orchestrator calls them and persists the result.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import Field, field_validator

from caseflow.core.exceptions import InvalidRunTransitionError
from caseflow.models.base import CamelModel, utcnow


class PipelineStage(str, Enum):
    """Pipeline stages in execution order."""

    INTAKE = "intake"
    OCR = "ocr"
    CLASSIFY = "classify"
    EXTRACT = "extract"
    RECONCILE = "reconcile"
    ACTIONS = "actions"


PIPELINE_STAGES: Tuple[PipelineStage, ...] = tuple(PipelineStage)


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class StageStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageState(CamelModel):
    """Status and timing of one stage within a run."""

    status: StageStatus = StageStatus.QUEUED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


def initial_stage_statuses() -> Dict[PipelineStage, StageState]:
    return {stage: StageState() for stage in PIPELINE_STAGES}


class PipelineRun(CamelModel):
    """One processing attempt of a document."""

    id: UUID = Field(default_factory=uuid4)
    firm_id: UUID
    matter_id: UUID
    document_id: UUID
    status: RunStatus = RunStatus.QUEUED
    current_stage: Optional[PipelineStage] = None
    stage_statuses: Dict[PipelineStage, StageState] = Field(default_factory=initial_stage_statuses)
    document_hash: Optional[str] = None
    classified_doc_type: Optional[str] = None
    classification_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    taxonomy_pack_id: Optional[UUID] = None
    findings_count: int = 0
    actions_count: int = 0
    total_tokens_used: int = 0
    cancel_requested: bool = False
    triggered_by: Optional[UUID] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("stage_statuses")
    @classmethod
    def _all_stages_present(cls, value: Dict[PipelineStage, StageState]) -> Dict[PipelineStage, StageState]:
        # Keys are always exactly the six stages, in pipeline order
        return {stage: value.get(stage) or StageState() for stage in PIPELINE_STAGES}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def stage(self, stage: PipelineStage) -> StageState:
        return self.stage_statuses[stage]

    def start(self, now: Optional[datetime] = None) -> None:
        """Move a queued run to running."""
        if self.status != RunStatus.QUEUED:
            raise InvalidRunTransitionError(f"Run {self.id} cannot start from status {self.status.value}")
        self.status = RunStatus.RUNNING
        self.started_at = now or utcnow()

    def mark_stage_running(self, stage: PipelineStage, now: Optional[datetime] = None) -> None:
        self._require_running(stage)
        state = self.stage_statuses[stage]
        if state.status != StageStatus.QUEUED:
            raise InvalidRunTransitionError(
                f"Stage {stage.value} cannot start from status {state.status.value}"
            )
        self._require_predecessors_finished(stage)
        self.current_stage = stage
        self.stage_statuses[stage] = StageState(status=StageStatus.RUNNING, started_at=now or utcnow())

    def mark_stage_completed(self, stage: PipelineStage, now: Optional[datetime] = None) -> None:
        self._finish_stage(stage, StageStatus.COMPLETED, now)

    def mark_stage_skipped(self, stage: PipelineStage, now: Optional[datetime] = None) -> None:
        self._finish_stage(stage, StageStatus.SKIPPED, now)

    def mark_failed(self, stage: PipelineStage, error: str, now: Optional[datetime] = None) -> None:
        """Fail ``stage`` and with it the run."""
        self._require_running(stage)
        state = self.stage_statuses[stage]
        if state.status != StageStatus.RUNNING:
            raise InvalidRunTransitionError(
                f"Stage {stage.value} cannot fail from status {state.status.value}"
            )
        timestamp = now or utcnow()
        self.stage_statuses[stage] = state.model_copy(
            update={"status": StageStatus.FAILED, "completed_at": timestamp, "error": error}
        )
        self.status = RunStatus.FAILED
        self.error = error
        self.completed_at = timestamp

    def mark_aborted(self, error: str, now: Optional[datetime] = None) -> None:
        """Fail a running run from outside its stage handlers.

        A stage still marked running fails with the same error; finished
        stages keep their status.
        """
        if self.status != RunStatus.RUNNING:
            raise InvalidRunTransitionError(f"Run {self.id} cannot abort from status {self.status.value}")
        timestamp = now or utcnow()
        if self.current_stage is not None:
            state = self.stage_statuses[self.current_stage]
            if state.status == StageStatus.RUNNING:
                self.stage_statuses[self.current_stage] = state.model_copy(
                    update={"status": StageStatus.FAILED, "completed_at": timestamp, "error": error}
                )
        self.status = RunStatus.FAILED
        self.error = error
        self.completed_at = timestamp

    def mark_completed(self, now: Optional[datetime] = None) -> None:
        """Complete the run once every stage has finished."""
        if self.status != RunStatus.RUNNING:
            raise InvalidRunTransitionError(f"Run {self.id} cannot complete from status {self.status.value}")
        unfinished = [
            stage.value
            for stage, state in self.stage_statuses.items()
            if state.status not in (StageStatus.COMPLETED, StageStatus.SKIPPED)
        ]
        if unfinished:
            raise InvalidRunTransitionError(f"Run {self.id} has unfinished stages: {', '.join(unfinished)}")
        self.status = RunStatus.COMPLETED
        self.current_stage = None
        self.completed_at = now or utcnow()

    def mark_cancelled(self, now: Optional[datetime] = None) -> None:
        if self.is_terminal:
            raise InvalidRunTransitionError(f"Run {self.id} is already {self.status.value}")
        if any(state.status == StageStatus.RUNNING for state in self.stage_statuses.values()):
            raise InvalidRunTransitionError(f"Run {self.id} cannot be cancelled mid-stage")
        self.status = RunStatus.CANCELLED
        self.completed_at = now or utcnow()

    def _finish_stage(self, stage: PipelineStage, status: StageStatus, now: Optional[datetime]) -> None:
        self._require_running(stage)
        state = self.stage_statuses[stage]
        if state.status != StageStatus.RUNNING:
            raise InvalidRunTransitionError(
                f"Stage {stage.value} cannot finish from status {state.status.value}"
            )
        self.stage_statuses[stage] = state.model_copy(
            update={"status": status, "completed_at": now or utcnow()}
        )

    def _require_running(self, stage: PipelineStage) -> None:
        if self.status != RunStatus.RUNNING:
            raise InvalidRunTransitionError(
                f"Stage {stage.value} cannot change while run is {self.status.value}"
            )

    def _require_predecessors_finished(self, stage: PipelineStage) -> None:
        for previous in PIPELINE_STAGES[: PIPELINE_STAGES.index(stage)]:
            if self.stage_statuses[previous].status not in (StageStatus.COMPLETED, StageStatus.SKIPPED):
                raise InvalidRunTransitionError(
                    f"Stage {stage.value} cannot start before {previous.value} has finished"
                )
