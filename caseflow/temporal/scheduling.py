"""Create pipeline runs and hand them to the Temporal worker."""

from typing import Optional
from uuid import UUID

from temporalio.client import Client as TemporalClient

from caseflow.core.unit_of_work import UnitOfWork
from caseflow.models.pipeline import PipelineRun
from caseflow.temporal.constants import pipeline_workflow_id
from caseflow.temporal.workflows import DocumentPipelineWorkflow
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


async def enqueue_pipeline_run(
    uow: UnitOfWork,
    temporal_client: TemporalClient,
    task_queue: str,
    matter_id: UUID,
    document_id: UUID,
    triggered_by: Optional[UUID] = None,
) -> PipelineRun:
    """Persist a queued run and start its workflow.

    The run is committed before the workflow starts so the worker always
    finds it.

    Args:
        uow: Open unit of work for the run's firm
        temporal_client: Connected Temporal client
        task_queue: Queue served by the pipeline worker
        matter_id: Matter the document belongs to
        document_id: Document to process
        triggered_by: User who requested processing

    Returns:
        The queued PipelineRun
    """
    run = PipelineRun(
        firm_id=uow.firm_id,
        matter_id=matter_id,
        document_id=document_id,
        triggered_by=triggered_by,
    )
    await uow.runs.add(run)
    await uow.commit()
    LOGGER.info(
        "Pipeline run queued",
        extra={"pipeline_run_id": str(run.id), "document_id": str(document_id)},
    )

    handle = await temporal_client.start_workflow(
        DocumentPipelineWorkflow.run,
        {"firm_id": str(uow.firm_id), "run_id": str(run.id)},
        id=pipeline_workflow_id(str(run.id)),
        task_queue=task_queue,
    )
    LOGGER.info(f"Workflow started: {handle.id}", extra={"pipeline_run_id": str(run.id)})
    return run
