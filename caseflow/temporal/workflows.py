"""Workflow running one document pipeline run."""

from datetime import timedelta
from typing import Dict, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

from caseflow.temporal.constants import PIPELINE_ACTIVITY_TIMEOUT_SECONDS, RUN_DOCUMENT_PIPELINE_ACTIVITY


@workflow.defn
class DocumentPipelineWorkflow:
    """Hands a pipeline run to a single activity that executes all six stages.

    The activity is attempted once; a failed run is never resumed.
    """

    def __init__(self):
        self._status = "initialized"
        self._result: Optional[Dict] = None

    @workflow.query
    def get_status(self) -> dict:
        """Query handler for the workflow's own progress."""
        return {
            "status": self._status,
            "run_status": self._result.get("status") if self._result else None,
        }

    @workflow.run
    async def run(self, payload: Dict) -> dict:
        firm_id = payload["firm_id"]
        run_id = payload["run_id"]
        self._status = "processing"

        self._result = await workflow.execute_activity(
            RUN_DOCUMENT_PIPELINE_ACTIVITY,
            args=[firm_id, run_id],
            start_to_close_timeout=timedelta(seconds=PIPELINE_ACTIVITY_TIMEOUT_SECONDS),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )

        self._status = "completed"
        return self._result
