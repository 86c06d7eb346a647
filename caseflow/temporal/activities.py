"""Pipeline activities."""

from uuid import UUID

from temporalio import activity

from caseflow.services.pipeline.orchestrator import PipelineOrchestrator
from caseflow.temporal.constants import RUN_DOCUMENT_PIPELINE_ACTIVITY
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class PipelineActivities:
    """Activities bound to one process-wide orchestrator."""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator

    @activity.defn(name=RUN_DOCUMENT_PIPELINE_ACTIVITY)
    async def run_document_pipeline(self, firm_id: str, run_id: str) -> dict:
        """Execute a pipeline run end to end and report its final state."""
        LOGGER.info(
            f"Starting pipeline run {run_id}",
            extra={"firm_id": firm_id, "pipeline_run_id": run_id},
        )
        run = await self.orchestrator.run(UUID(firm_id), UUID(run_id))
        return {
            "run_id": str(run.id),
            "status": run.status.value,
            "findings_count": run.findings_count,
            "actions_count": run.actions_count,
            "error": run.error,
        }
