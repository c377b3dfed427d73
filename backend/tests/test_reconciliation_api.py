"""
API Tests for the Reconciliation Router

Tests the HTTP surface with services mocked out:
- Internal API key and X-Actor-Id enforcement
- Run upload outcomes mapped to status codes
- Resolution conflicts surfaced as 409 with the current state
- Report download formats

Run with: pytest tests/test_reconciliation_api.py -v
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from database.connection import get_db
from reconciliation.exceptions import ConfigurationMissing, ResolutionConflict
from reconciliation.models import RunStatus
from reconciliation.supplier_registry import SupplierConfigRegistry
from reconciliation.services.run_orchestrator import RunProcessingResult
from reconciliation.endpoints.reconciliation_api import router

API = "reconciliation.endpoints.reconciliation_api"
AUTH = {"X-Internal-Api-Key": "test-internal-key", "X-Service-Name": "admin-ui"}
ACTOR = dict(AUTH, **{"X-Actor-Id": "ops-7"})


@pytest.fixture
def app(mock_db):
    app = FastAPI()
    app.include_router(router, prefix="/api")

    async def override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def registry(make_config):
    registry = SupplierConfigRegistry()
    registry.register(make_config("MMART"))
    with patch(f"{API}.supplier_registry", registry):
        yield registry


def _upload(client, supplier_code="MMART", headers=AUTH):
    return client.post(
        "/api/reconciliation/runs",
        data={"supplier_code": supplier_code},
        files={"file": ("recon_20260302.csv", b"MM001,Example\n", "text/csv")},
        headers=headers,
    )


class TestAuthentication:

    def test_missing_key_is_rejected(self, client):
        response = client.get("/api/reconciliation/runs")
        assert response.status_code == 401

    def test_wrong_key_is_rejected(self, client):
        response = client.get("/api/reconciliation/runs", headers={"X-Internal-Api-Key": "nope"})
        assert response.status_code == 401

    def test_status_is_public(self, client, registry):
        response = client.get("/api/reconciliation/status")

        assert response.status_code == 200
        body = response.json()
        assert body["module"] == "reconciliation"
        assert body["adapters"] == ["easypay", "flash", "mobilemart"]
        assert body["worker_pool"]["running"] is False

    def test_resolve_requires_actor(self, client):
        response = client.patch(
            f"/api/reconciliation/matches/{uuid.uuid4()}/resolve",
            json={"resolution_method": "write_off"},
            headers=AUTH,
        )
        assert response.status_code == 400
        assert "X-Actor-Id" in response.json()["detail"]


class TestRunEndpoints:
    """Test upload and run queries."""

    @pytest.fixture
    def orchestrator(self):
        orchestrator = MagicMock()
        orchestrator.process_file = AsyncMock()
        with patch(f"{API}.RunOrchestrator", return_value=orchestrator):
            yield orchestrator

    def test_upload_completed(self, client, orchestrator):
        run_id = str(uuid.uuid4())
        orchestrator.process_file.return_value = RunProcessingResult(
            run_id=run_id, supplier_code="MMART", status=RunStatus.COMPLETED, passed=True
        )

        response = _upload(client)

        assert response.status_code == 200
        assert response.json()["run_id"] == run_id
        assert response.json()["status"] == "completed"
        args = orchestrator.process_file.call_args.args
        assert args[0] == "MMART"
        assert args[1] == "recon_20260302.csv"
        assert args[4] == "admin-ui"

    def test_duplicate_upload_returns_existing_run(self, client, orchestrator):
        orchestrator.process_file.return_value = RunProcessingResult(
            run_id="r-1", supplier_code="MMART", status=RunStatus.FAILED, already_processed=True
        )

        response = _upload(client)

        assert response.status_code == 200
        assert response.json()["already_processed"] is True

    def test_schema_mismatch_is_422(self, client, orchestrator):
        orchestrator.process_file.return_value = RunProcessingResult(
            run_id="r-1", supplier_code="MMART", status=RunStatus.FAILED,
            failure_reason="SchemaMismatch", error="too many rejects",
            parse_report={"rejected_count": 9},
        )

        response = _upload(client)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["failure_reason"] == "SchemaMismatch"
        assert detail["parse_report"] == {"rejected_count": 9}

    def test_timeout_is_500(self, client, orchestrator):
        orchestrator.process_file.return_value = RunProcessingResult(
            run_id="r-1", supplier_code="MMART", status=RunStatus.FAILED, failure_reason="Timeout"
        )

        assert _upload(client).status_code == 500

    def test_unknown_supplier_is_404(self, client, orchestrator):
        orchestrator.process_file.side_effect = ConfigurationMissing("NOPE")

        response = _upload(client, supplier_code="NOPE")

        assert response.status_code == 404

    def test_empty_upload_is_400(self, client, orchestrator):
        response = client.post(
            "/api/reconciliation/runs",
            data={"supplier_code": "MMART"},
            files={"file": ("empty.csv", b"", "text/csv")},
            headers=AUTH,
        )
        assert response.status_code == 400
        orchestrator.process_file.assert_not_awaited()

    def test_upload_uses_running_worker_pool(self, app, client, orchestrator):
        pool = MagicMock()
        pool.is_running = True
        pool.submit = AsyncMock(return_value=RunProcessingResult(
            run_id="r-9", supplier_code="MMART", status=RunStatus.COMPLETED
        ))
        app.state.worker_pool = pool

        response = _upload(client)

        assert response.json()["run_id"] == "r-9"
        orchestrator.process_file.assert_not_awaited()

    def test_get_run_validates_uuid(self, client):
        response = client.get("/api/reconciliation/runs/not-a-uuid", headers=AUTH)
        assert response.status_code == 422

    def test_get_run_not_found(self, client):
        store = MagicMock()
        store.get_run = AsyncMock(return_value=None)
        with patch(f"{API}.ReconciliationStore", return_value=store):
            response = client.get(f"/api/reconciliation/runs/{uuid.uuid4()}", headers=AUTH)
        assert response.status_code == 404

    def test_list_runs_rejects_unknown_status(self, client):
        response = client.get("/api/reconciliation/runs?status=finished", headers=AUTH)
        assert response.status_code == 422


class TestMatchEndpoints:
    """Test manual resolution routes."""

    @pytest.fixture
    def service(self):
        service = MagicMock()
        service.apply_resolution = AsyncMock()
        service.escalate = AsyncMock()
        with patch(f"{API}.ResolutionService", return_value=service):
            yield service

    def test_resolve(self, client, service):
        match_id = str(uuid.uuid4())
        service.apply_resolution.return_value = {"id": match_id, "resolution_status": "resolved"}

        response = client.patch(
            f"/api/reconciliation/matches/{match_id}/resolve",
            json={"resolution_method": "write_off", "notes": "below materiality"},
            headers=ACTOR,
        )

        assert response.status_code == 200
        args = service.apply_resolution.call_args.args
        assert args[0] == match_id
        assert args[1].value == "write_off"
        assert args[3] == "ops-7"

    def test_resolve_rejects_unknown_method(self, client, service):
        response = client.patch(
            f"/api/reconciliation/matches/{uuid.uuid4()}/resolve",
            json={"resolution_method": "shrug"},
            headers=ACTOR,
        )
        assert response.status_code == 422

    def test_resolve_conflict_is_409_with_current_state(self, client, service):
        match_id = str(uuid.uuid4())
        service.apply_resolution.side_effect = ResolutionConflict(
            match_id, "manual_review", {"resolution_status": "resolved", "resolved_by": "ops-1"}
        )

        response = client.patch(
            f"/api/reconciliation/matches/{match_id}/resolve",
            json={"resolution_method": "write_off"},
            headers=ACTOR,
        )

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["current_state"]["resolved_by"] == "ops-1"

    def test_resolve_missing_match_is_404(self, client, service):
        service.apply_resolution.side_effect = ValueError("Match abc not found")

        response = client.patch(
            f"/api/reconciliation/matches/{uuid.uuid4()}/resolve",
            json={"resolution_method": "write_off"},
            headers=ACTOR,
        )
        assert response.status_code == 404

    def test_escalate(self, client, service):
        service.escalate.return_value = {"resolution_status": "escalated"}

        response = client.post(
            f"/api/reconciliation/matches/{uuid.uuid4()}/escalate",
            json={"reason": "supplier disputes amount"},
            headers=ACTOR,
        )

        assert response.status_code == 200
        assert service.escalate.call_args.args[1:] == ("supplier disputes amount", "ops-7")


class TestSupplierEndpoints:

    def test_list_suppliers(self, client, registry):
        response = client.get("/api/reconciliation/suppliers", headers=AUTH)

        assert response.status_code == 200
        assert [s["supplier_code"] for s in response.json()["suppliers"]] == ["MMART"]

    def test_unknown_supplier_is_404(self, client, registry):
        response = client.get("/api/reconciliation/suppliers/NOPE", headers=AUTH)
        assert response.status_code == 404

    def test_upsert_rejects_unknown_adapter(self, client, registry):
        response = client.put(
            "/api/reconciliation/suppliers/NEWCO",
            json={"adapter_class": "telepathy"},
            headers=AUTH,
        )
        assert response.status_code == 422

    def test_upsert_records_audit_event(self, client, registry, make_config):
        updated = make_config("MMART", sla_hours=12)
        audit = MagicMock()
        audit.append = AsyncMock()
        with patch.object(registry, "upsert_config", AsyncMock(return_value=updated)), \
                patch(f"{API}.AuditTrailWriter", return_value=audit):
            response = client.put(
                "/api/reconciliation/suppliers/MMART",
                json={"sla_hours": 12},
                headers=ACTOR,
            )

        assert response.status_code == 200
        assert response.json()["sla_hours"] == 12
        payload = audit.append.call_args.kwargs["payload"]
        assert payload["fields"] == ["sla_hours"]
        assert audit.append.call_args.kwargs["actor"] == {"type": "user", "id": "ops-7"}


class TestReportEndpoint:

    @pytest.fixture
    def report_service(self):
        service = MagicMock()
        service.json_report = AsyncMock(return_value={"run": {"id": "r"}})
        service.xlsx_report = AsyncMock(return_value=b"PK\x03\x04")
        with patch(f"{API}.ReportService", return_value=service):
            yield service

    def test_json_report(self, client, report_service):
        response = client.get(f"/api/reconciliation/runs/{uuid.uuid4()}/report", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"run": {"id": "r"}}

    def test_xlsx_report(self, client, report_service):
        run_id = str(uuid.uuid4())

        response = client.get(f"/api/reconciliation/runs/{run_id}/report?format=xlsx", headers=AUTH)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith(
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        )
        assert run_id in response.headers["content-disposition"]
        assert response.content == b"PK\x03\x04"

    def test_missing_run_is_404(self, client, report_service):
        report_service.json_report.side_effect = ValueError("Run not found")

        response = client.get(f"/api/reconciliation/runs/{uuid.uuid4()}/report", headers=AUTH)
        assert response.status_code == 404

    def test_unknown_format_is_422(self, client, report_service):
        response = client.get(f"/api/reconciliation/runs/{uuid.uuid4()}/report?format=pdf", headers=AUTH)
        assert response.status_code == 422
