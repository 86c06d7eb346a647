import pytest

from caseflow.core.exceptions import InvalidRunTransitionError
from caseflow.models.pipeline import PIPELINE_STAGES, PipelineStage, RunStatus, StageStatus
from caseflow.schemas.pipeline import PipelineRunStatus

from conftest import make_run


def _run_through(run, stages):
    for stage in stages:
        run.mark_stage_running(stage)
        run.mark_stage_completed(stage)


class TestPipelineRun:
    def test_new_run_has_every_stage_queued(self):
        run = make_run()

        assert run.status == RunStatus.QUEUED
        assert list(run.stage_statuses) == list(PIPELINE_STAGES)
        assert all(state.status == StageStatus.QUEUED for state in run.stage_statuses.values())

    def test_abort_fails_the_running_stage_and_the_run(self):
        run = make_run()
        run.start()
        _run_through(run, PIPELINE_STAGES[:1])
        run.mark_stage_running(PipelineStage.OCR)

        run.mark_aborted("db connection lost")

        assert run.status == RunStatus.FAILED
        assert run.error == "db connection lost"
        assert run.completed_at is not None
        assert run.stage(PipelineStage.INTAKE).status == StageStatus.COMPLETED
        assert run.stage(PipelineStage.OCR).status == StageStatus.FAILED
        assert run.stage(PipelineStage.OCR).error == "db connection lost"

    def test_only_running_runs_abort(self):
        with pytest.raises(InvalidRunTransitionError):
            make_run().mark_aborted("too early")

    def test_stage_statuses_are_filled_in(self):
        run = make_run(stage_statuses={PipelineStage.INTAKE: {"status": "completed"}})

        assert run.stage(PipelineStage.INTAKE).status == StageStatus.COMPLETED
        assert run.stage(PipelineStage.ACTIONS).status == StageStatus.QUEUED

    def test_full_lifecycle(self):
        run = make_run()
        run.start()
        _run_through(run, PIPELINE_STAGES[:-1])
        run.mark_stage_running(PipelineStage.ACTIONS)
        run.mark_stage_skipped(PipelineStage.ACTIONS)
        run.mark_completed()

        assert run.status == RunStatus.COMPLETED
        assert run.current_stage is None
        assert run.stage(PipelineStage.ACTIONS).status == StageStatus.SKIPPED
        assert run.completed_at is not None

    def test_stages_cannot_run_out_of_order(self):
        run = make_run()
        run.start()

        with pytest.raises(InvalidRunTransitionError):
            run.mark_stage_running(PipelineStage.OCR)

    def test_stage_cannot_start_before_run(self):
        with pytest.raises(InvalidRunTransitionError):
            make_run().mark_stage_running(PipelineStage.INTAKE)

    def test_failure_fails_the_run(self):
        run = make_run()
        run.start()
        run.mark_stage_running(PipelineStage.INTAKE)
        run.mark_failed(PipelineStage.INTAKE, "Document missing")

        assert run.status == RunStatus.FAILED
        assert run.error == "Document missing"
        assert run.stage(PipelineStage.INTAKE).error == "Document missing"
        assert run.is_terminal
        with pytest.raises(InvalidRunTransitionError):
            run.mark_cancelled()

    def test_cannot_complete_with_unfinished_stages(self):
        run = make_run()
        run.start()
        _run_through(run, PIPELINE_STAGES[:2])

        with pytest.raises(InvalidRunTransitionError):
            run.mark_completed()

    def test_cancel_only_between_stages(self):
        run = make_run()
        run.start()
        run.mark_stage_running(PipelineStage.INTAKE)

        with pytest.raises(InvalidRunTransitionError):
            run.mark_cancelled()

        run.mark_stage_completed(PipelineStage.INTAKE)
        run.mark_cancelled()
        assert run.status == RunStatus.CANCELLED

    def test_start_twice(self):
        run = make_run()
        run.start()
        with pytest.raises(InvalidRunTransitionError):
            run.start()


def test_status_payload_uses_camel_case():
    run = make_run(classified_doc_type="demand_letter", classification_confidence=0.9, total_tokens_used=99)

    payload = PipelineRunStatus.from_run(run).model_dump(mode="json", by_alias=True)

    assert payload["documentId"] == str(run.document_id)
    assert payload["classifiedDocType"] == "demand_letter"
    assert payload["stageStatuses"]["intake"]["status"] == "queued"
    assert "totalTokensUsed" not in payload
    assert "firmId" not in payload
