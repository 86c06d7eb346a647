"""Drives one pipeline run through its six stages."""

from typing import Awaitable, Callable, Dict, Mapping, Optional
from uuid import UUID

from caseflow.core.exceptions import (
    InvalidRunTransitionError,
    ModelCallError,
    PipelineError,
    PipelineRunNotFoundError,
)
from caseflow.core.unit_of_work import UnitOfWork, UnitOfWorkFactory
from caseflow.models.pipeline import PIPELINE_STAGES, PipelineRun, PipelineStage, RunStatus
from caseflow.services.pipeline.stages import PipelineStages, StageContext, StageOutcome
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

StageHandler = Callable[[StageContext], Awaitable[StageOutcome]]


def stage_handlers(stages: PipelineStages) -> Dict[PipelineStage, StageHandler]:
    """Map every stage to its handler on ``stages``."""
    return {
        PipelineStage.INTAKE: stages.intake,
        PipelineStage.OCR: stages.ocr,
        PipelineStage.CLASSIFY: stages.classify,
        PipelineStage.EXTRACT: stages.extract,
        PipelineStage.RECONCILE: stages.reconcile,
        PipelineStage.ACTIONS: stages.actions,
    }


def _error_message(error: Exception) -> str:
    if isinstance(error, ModelCallError):
        return f"{error.kind.value}: {error.message}"
    message = getattr(error, "message", None) or str(error)
    return message or error.__class__.__name__


class PipelineOrchestrator:
    """Runs stages strictly in order and records their status on the run.

    The run is persisted at every stage boundary. Cancellation is only
    observed between stages; a running stage always finishes or fails.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, handlers: Mapping[PipelineStage, StageHandler]):
        """Initialize the orchestrator.

        Args:
            uow_factory: Builds a unit of work for a firm
            handlers: One handler per stage

        Raises:
            PipelineError: If a stage has no handler
        """
        missing = [stage.value for stage in PIPELINE_STAGES if stage not in handlers]
        if missing:
            raise PipelineError(f"No handler registered for stages: {', '.join(missing)}")
        self.uow_factory = uow_factory
        self.handlers = dict(handlers)

    async def _load(self, firm_id: UUID, run_id: UUID) -> PipelineRun:
        async with self.uow_factory(firm_id) as uow:
            run = await uow.runs.get(run_id)
        if run is None:
            raise PipelineRunNotFoundError(f"Pipeline run {run_id} not found")
        return run

    async def _save(self, run: PipelineRun) -> None:
        async with self.uow_factory(run.firm_id) as uow:
            await uow.runs.save(run)
            await uow.commit()

    async def _cancel_requested(self, run: PipelineRun) -> bool:
        if run.cancel_requested:
            return True
        latest = await self._load(run.firm_id, run.id)
        run.cancel_requested = latest.cancel_requested
        return run.cancel_requested

    async def run(self, firm_id: UUID, run_id: UUID) -> PipelineRun:
        """Execute a queued run end to end.

        Args:
            firm_id: Tenant owning the run
            run_id: Run to execute

        Returns:
            The run in its terminal state

        Raises:
            PipelineRunNotFoundError: If the run does not exist
            InvalidRunTransitionError: If the run is not queued
        """
        run = await self._load(firm_id, run_id)
        if run.is_terminal:
            LOGGER.info(f"Run {run_id} is already {run.status.value}", extra={"pipeline_run_id": str(run_id)})
            return run

        run.start()
        if not await self._claim(run):
            stored = await self._load(firm_id, run_id)
            LOGGER.info(
                f"Run {run_id} left the queue as {stored.status.value} before it could start",
                extra={"pipeline_run_id": str(run_id)},
            )
            return stored
        LOGGER.info("Pipeline run started", extra={"pipeline_run_id": str(run.id)})

        try:
            return await self._run_stages(run)
        except Exception as e:
            await self._record_abort(run, e)
            raise

    async def _claim(self, run: PipelineRun) -> bool:
        """Persist queued -> running unless a cancel got there first."""
        async with self.uow_factory(run.firm_id) as uow:
            claimed = await uow.runs.save_if_status(run, RunStatus.QUEUED)
            await uow.commit()
        return claimed

    async def _record_abort(self, run: PipelineRun, error: Exception) -> None:
        """Leave a terminal, visible record of a run that broke down between stages."""
        if not run.is_terminal:
            run.mark_aborted(_error_message(error))
        LOGGER.error(
            f"Pipeline run aborted: {_error_message(error)}",
            exc_info=True,
            extra={"pipeline_run_id": str(run.id), "status": run.status.value},
        )
        try:
            await self._save(run)
        except Exception:
            LOGGER.error(
                "Could not record the aborted pipeline run",
                exc_info=True,
                extra={"pipeline_run_id": str(run.id)},
            )

    async def _run_stages(self, run: PipelineRun) -> PipelineRun:
        ctx = StageContext(run=run)
        for stage in PIPELINE_STAGES:
            if await self._cancel_requested(run):
                run.mark_cancelled()
                await self._save(run)
                LOGGER.info(
                    f"Pipeline run cancelled before {stage.value}",
                    extra={"pipeline_run_id": str(run.id)},
                )
                return run

            if not await self._run_stage(ctx, stage):
                return run

        run.mark_completed()
        await self._save(run)
        LOGGER.info(
            "Pipeline run completed",
            extra={
                "pipeline_run_id": str(run.id),
                "findings_count": run.findings_count,
                "actions_count": run.actions_count,
                "total_tokens_used": run.total_tokens_used,
            },
        )
        return run

    async def _run_stage(self, ctx: StageContext, stage: PipelineStage) -> bool:
        """Run one stage and persist its outcome; False when it failed."""
        run = ctx.run
        run.mark_stage_running(stage)
        await self._save(run)
        LOGGER.info(f"Stage {stage.value} started", extra={"pipeline_run_id": str(run.id), "stage": stage.value})

        try:
            outcome = await self.handlers[stage](ctx)
        except Exception as e:
            message = _error_message(e)
            LOGGER.error(
                f"Stage {stage.value} failed: {message}",
                exc_info=True,
                extra={"pipeline_run_id": str(run.id), "stage": stage.value},
            )
            run.mark_failed(stage, message)
            await self._save(run)
            return False

        if outcome == StageOutcome.SKIPPED:
            run.mark_stage_skipped(stage)
        else:
            run.mark_stage_completed(stage)
        await self._save(run)
        LOGGER.info(
            f"Stage {stage.value} {outcome.value}",
            extra={"pipeline_run_id": str(run.id), "stage": stage.value},
        )
        return True

    async def request_cancellation(self, firm_id: UUID, run_id: UUID) -> PipelineRun:
        """Cancel a run.

        A queued run is cancelled at once; a running run is flagged and stops
        at its next stage boundary.

        Raises:
            PipelineRunNotFoundError: If the run does not exist
            InvalidRunTransitionError: If the run already finished
        """
        async with self.uow_factory(firm_id) as uow:
            return await cancel_run(uow, run_id)


async def cancel_run(uow: UnitOfWork, run_id: UUID) -> PipelineRun:
    """Cancel or flag ``run_id`` within an open unit of work and commit."""
    run: Optional[PipelineRun] = await uow.runs.get(run_id)
    if run is None:
        raise PipelineRunNotFoundError(f"Pipeline run {run_id} not found")
    if run.is_terminal:
        raise InvalidRunTransitionError(f"Run {run_id} is already {run.status.value}")

    if run.status == RunStatus.QUEUED:
        run.mark_cancelled()
        if await uow.runs.save_if_status(run, RunStatus.QUEUED):
            await uow.commit()
            LOGGER.info("Queued pipeline run cancelled", extra={"pipeline_run_id": str(run_id)})
            return run

        # A worker started the run in the meantime
        run = await uow.runs.get(run_id, fresh=True)
        if run.is_terminal:
            raise InvalidRunTransitionError(f"Run {run_id} is already {run.status.value}")

    run.cancel_requested = True
    await uow.runs.flag_cancellation(run.id)
    await uow.commit()

    LOGGER.info(
        "Pipeline run cancellation requested",
        extra={"pipeline_run_id": str(run_id), "status": run.status.value},
    )
    return run
