"""Shared constants for Temporal workflows."""

# Activity names
RUN_DOCUMENT_PIPELINE_ACTIVITY = "run_document_pipeline"

# Timeouts
PIPELINE_ACTIVITY_TIMEOUT_SECONDS = 3600  # 1 hour


def pipeline_workflow_id(run_id: str) -> str:
    return f"pipeline-run-{run_id}"
