from typing import Annotated
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID, uuid4

import pytest
from fastapi import Depends, status
from fastapi.testclient import TestClient

from caseflow.api.dependencies import get_firm_id, get_temporal, get_unit_of_work
from caseflow.config import settings
from caseflow.core.database import db_client
from caseflow.main import app
from caseflow.models.findings import FindingStatus
from caseflow.models.pipeline import RunStatus
from caseflow.models.risk import MatterRiskAssessment, RiskFactor
from caseflow.temporal.workflows import DocumentPipelineWorkflow

from conftest import DOCUMENT_ID, FIRM_ID, MATTER_ID, InMemoryUnitOfWork, make_finding, make_run

PREFIX = f"{settings.api_v1_prefix}/pipeline"
HEADERS = {"X-Firm-Id": str(FIRM_ID)}


@pytest.fixture
def test_client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def temporal_client():
    client = MagicMock()
    client.start_workflow = AsyncMock(return_value=MagicMock(id="pipeline-run-x"))
    return client


@pytest.fixture(autouse=True)
def overrides(store, temporal_client):
    """Route the endpoints to in-memory storage and a fake Temporal client."""

    def override_uow(firm_id: Annotated[UUID, Depends(get_firm_id)]):
        return InMemoryUnitOfWork(store, firm_id)

    app.dependency_overrides[get_unit_of_work] = override_uow
    app.dependency_overrides[get_temporal] = lambda: temporal_client
    yield
    app.dependency_overrides = {}


class TestEnqueueRun:
    def test_queues_run_and_starts_workflow(self, test_client, store, temporal_client):
        response = test_client.post(
            f"{PREFIX}/runs",
            json={"matterId": str(MATTER_ID), "documentId": str(DOCUMENT_ID)},
            headers=HEADERS,
        )

        assert response.status_code == status.HTTP_202_ACCEPTED
        data = response.json()["data"]
        assert data["status"] == "queued"
        assert data["documentId"] == str(DOCUMENT_ID)
        assert set(data["stageStatuses"]) == {"intake", "ocr", "classify", "extract", "reconcile", "actions"}

        run_id = UUID(data["id"])
        assert store.runs[run_id].firm_id == FIRM_ID
        args, kwargs = temporal_client.start_workflow.call_args
        assert args[0] == DocumentPipelineWorkflow.run
        assert args[1] == {"firm_id": str(FIRM_ID), "run_id": str(run_id)}
        assert kwargs["id"] == f"pipeline-run-{run_id}"
        assert kwargs["task_queue"] == settings.temporal.task_queue

    def test_requires_firm_header(self, test_client):
        response = test_client.post(
            f"{PREFIX}/runs", json={"matterId": str(MATTER_ID), "documentId": str(DOCUMENT_ID)}
        )
        assert response.status_code == 422


class TestGetRun:
    def test_returns_run_with_findings(self, test_client, store):
        run = make_run(classified_doc_type="demand_letter")
        store.runs[run.id] = run
        finding = make_finding(pipeline_run_id=run.id)
        store.findings[finding.id] = finding

        response = test_client.get(f"{PREFIX}/runs/{run.id}", headers={**HEADERS, "X-Correlation-ID": "req-1"})

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["status"] is True
        assert body["meta"]["request_id"] == "req-1"
        assert response.headers["X-Correlation-ID"] == "req-1"
        assert body["data"]["run"]["classifiedDocType"] == "demand_letter"
        assert body["data"]["findings"][0]["fieldKey"] == "demand_amount"
        assert body["data"]["actions"] == []

    def test_unknown_run_is_404(self, test_client):
        response = test_client.get(f"{PREFIX}/runs/{uuid4()}", headers=HEADERS)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        detail = response.json()["detail"]
        assert detail["status"] == 404
        assert detail["title"] == "Not Found"

    def test_other_firm_cannot_read_run(self, test_client, store):
        run = make_run()
        store.runs[run.id] = run

        response = test_client.get(f"{PREFIX}/runs/{run.id}", headers={"X-Firm-Id": str(uuid4())})

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestCancelRun:
    def test_cancels_queued_run(self, test_client, store):
        run = make_run()
        store.runs[run.id] = run

        response = test_client.post(f"{PREFIX}/runs/{run.id}/cancel", headers=HEADERS)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["message"] == "Pipeline run cancelled"
        assert store.runs[run.id].status == RunStatus.CANCELLED

    def test_finished_run_conflicts(self, test_client, store):
        run = make_run(status=RunStatus.COMPLETED)
        store.runs[run.id] = run

        response = test_client.post(f"{PREFIX}/runs/{run.id}/cancel", headers=HEADERS)

        assert response.status_code == status.HTTP_409_CONFLICT


class TestResolveFinding:
    def test_accepts_pending_finding(self, test_client, store):
        finding = make_finding()
        store.findings[finding.id] = finding

        response = test_client.post(
            f"{PREFIX}/findings/{finding.id}/resolve", json={"decision": "accepted"}, headers=HEADERS
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["status"] == "accepted"
        assert store.findings[finding.id].status == FindingStatus.ACCEPTED
        assert MATTER_ID in store.risk

    def test_rejects_unknown_decision(self, test_client, store):
        finding = make_finding()
        store.findings[finding.id] = finding

        response = test_client.post(
            f"{PREFIX}/findings/{finding.id}/resolve", json={"decision": "auto_applied"}, headers=HEADERS
        )

        assert response.status_code == 422

    def test_settled_finding_conflicts(self, test_client, store):
        finding = make_finding(status=FindingStatus.AUTO_APPLIED)
        store.findings[finding.id] = finding

        response = test_client.post(
            f"{PREFIX}/findings/{finding.id}/resolve", json={"decision": "rejected"}, headers=HEADERS
        )

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_finding_of_running_run_conflicts(self, test_client, store):
        run = make_run(status=RunStatus.RUNNING)
        store.runs[run.id] = run
        finding = make_finding(pipeline_run_id=run.id, status=FindingStatus.CONFLICT, existing_value="$90,000")
        store.findings[finding.id] = finding

        response = test_client.post(
            f"{PREFIX}/findings/{finding.id}/resolve", json={"decision": "accepted"}, headers=HEADERS
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert "still running" in response.json()["detail"]["detail"]
        assert store.findings[finding.id].status == FindingStatus.CONFLICT

    def test_unknown_finding_is_404(self, test_client):
        response = test_client.post(
            f"{PREFIX}/findings/{uuid4()}/resolve", json={"decision": "rejected"}, headers=HEADERS
        )
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestMatterRisk:
    def test_unassessed_matter_scores_zero(self, test_client):
        response = test_client.get(f"{PREFIX}/matters/{MATTER_ID}/risk", headers=HEADERS)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"] == {
            "matterId": str(MATTER_ID),
            "score": 0,
            "factors": [],
            "assessedAt": None,
        }

    def test_latest_assessment(self, test_client, store):
        store.risk[MATTER_ID] = MatterRiskAssessment(
            matter_id=MATTER_ID,
            firm_id=FIRM_ID,
            score=27,
            factors=[RiskFactor(key="conflicts", contribution=12, detail="1 finding(s) conflict")],
        )

        data = test_client.get(f"{PREFIX}/matters/{MATTER_ID}/risk", headers=HEADERS).json()["data"]

        assert data["score"] == 27
        assert data["factors"][0]["key"] == "conflicts"


def test_health(test_client):
    with patch.object(db_client, "health_check", new=AsyncMock(return_value={"status": "healthy"})):
        response = test_client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] == "healthy"


def test_root(test_client):
    response = test_client.get("/")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["health"] == "/health"
