"""Temporal worker service for the document pipeline.

This worker:
- Connects to the Temporal server configured in settings
- Builds one process-wide call semaphore, model client and orchestrator
- Serves DocumentPipelineWorkflow and its activity on the pipeline task queue
- Exposes a small health check app next to the worker
"""

import asyncio
from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI
from temporalio.client import Client
from temporalio.worker import Worker

from caseflow.config import Settings, settings
from caseflow.core.call_semaphore import CallSemaphore
from caseflow.core.database import async_session_maker, close_database, init_database
from caseflow.core.llm_client import ModelCallClient
from caseflow.core.unit_of_work import sqlalchemy_uow_factory
from caseflow.services.extraction.reconciliation import ReconciliationEngine
from caseflow.services.pipeline.http_collaborators import HttpActionSink, HttpDocumentSource
from caseflow.services.pipeline.orchestrator import PipelineOrchestrator, stage_handlers
from caseflow.services.pipeline.stages import PipelineStages, StageSettings
from caseflow.temporal.activities import PipelineActivities
from caseflow.temporal.workflows import DocumentPipelineWorkflow
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

MAX_CONNECT_ATTEMPTS = 5
CONNECT_RETRY_DELAY_SECONDS = 5

# Create a minimal FastAPI app for health checks
health_app = FastAPI(title="Caseflow Pipeline Worker Health Check")


@health_app.get("/health")
async def health():
    return {"status": "ok", "service": "pipeline-worker"}


@dataclass
class PipelineComponents:
    semaphore: CallSemaphore
    llm_client: ModelCallClient
    document_source: HttpDocumentSource
    action_sink: HttpActionSink
    orchestrator: PipelineOrchestrator

    async def aclose(self) -> None:
        await self.llm_client.aclose()
        await self.document_source.aclose()
        await self.action_sink.aclose()


def build_pipeline(config: Settings) -> PipelineComponents:
    """Wire the orchestrator and its collaborators from settings."""
    semaphore = CallSemaphore(config.llm.max_concurrent_calls)
    llm_client = ModelCallClient(
        api_key=config.llm.openrouter_api_key,
        base_url=config.llm.openrouter_api_url,
        semaphore=semaphore,
        default_timeout_ms=config.llm.call_timeout_ms,
        default_max_retries=config.llm.max_retries,
        default_retry_delay_ms=config.llm.retry_delay_ms,
    )
    document_source = HttpDocumentSource(
        config.services.document_service_url,
        token=config.services.service_token,
        timeout=config.services.request_timeout_seconds,
    )
    action_sink = HttpActionSink(
        config.services.action_service_url,
        token=config.services.service_token,
        timeout=config.services.request_timeout_seconds,
    )

    uow_factory = sqlalchemy_uow_factory(async_session_maker)
    stages = PipelineStages(
        uow_factory=uow_factory,
        llm_client=llm_client,
        document_source=document_source,
        action_sink=action_sink,
        reconciliation_engine=ReconciliationEngine(config.pipeline.auto_apply_threshold),
        settings=StageSettings(
            pipeline_model=config.llm.pipeline_model,
            ocr_model=config.llm.ocr_model,
            chunk_size=config.pipeline.chunk_size,
            chunk_overlap=config.pipeline.chunk_overlap,
            classification_sample_chars=config.pipeline.classification_sample_chars,
            low_classification_confidence=config.pipeline.low_classification_confidence,
        ),
    )
    orchestrator = PipelineOrchestrator(uow_factory, stage_handlers(stages))

    return PipelineComponents(
        semaphore=semaphore,
        llm_client=llm_client,
        document_source=document_source,
        action_sink=action_sink,
        orchestrator=orchestrator,
    )


async def connect_temporal(config: Settings) -> Client:
    """Connect to Temporal, retrying a few times while the server starts."""
    for attempt in range(MAX_CONNECT_ATTEMPTS):
        try:
            LOGGER.info(
                f"Connecting to Temporal server at {config.temporal.target} "
                f"(Attempt {attempt + 1}/{MAX_CONNECT_ATTEMPTS})"
            )
            return await Client.connect(config.temporal.target, namespace=config.temporal.namespace)
        except RuntimeError as e:
            if attempt == MAX_CONNECT_ATTEMPTS - 1:
                LOGGER.error(f"Failed to connect to Temporal server after {MAX_CONNECT_ATTEMPTS} attempts: {e}")
                raise
            LOGGER.warning(f"Connection attempt {attempt + 1} failed: {e}. Retrying in {CONNECT_RETRY_DELAY_SECONDS}s...")
            await asyncio.sleep(CONNECT_RETRY_DELAY_SECONDS)


async def run_worker(config: Settings = settings) -> None:
    """Serve the pipeline task queue until cancelled."""
    await init_database(create_tables=False)
    client = await connect_temporal(config)
    components = build_pipeline(config)
    activities = PipelineActivities(components.orchestrator)

    worker = Worker(
        client,
        task_queue=config.temporal.task_queue,
        workflows=[DocumentPipelineWorkflow],
        activities=[activities.run_document_pipeline],
        max_concurrent_activities=10,
    )

    LOGGER.info(
        f"Pipeline worker polling {config.temporal.task_queue}",
        extra={"max_concurrent_calls": components.semaphore.max_concurrent},
    )
    try:
        await worker.run()
    finally:
        await components.aclose()
        await close_database()


async def run_health_check_server(config: Settings = settings) -> None:
    port = config.port + 1
    LOGGER.info(f"Starting health check server on port {port}")
    server = uvicorn.Server(uvicorn.Config(health_app, host=config.host, port=port, log_level="info"))
    await server.serve()


async def main() -> None:
    await asyncio.gather(run_health_check_server(), run_worker())


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        LOGGER.info("Worker stopped by user")
