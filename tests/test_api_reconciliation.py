"""
Tests for fieldsync/api/reconciliation.py - cron/admin triggers, history,
metrics and read-only consistency checks.
"""
from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException

from fieldsync.api.reconciliation import (
    admin_reconciliation,
    consistency_checks,
    cron_reconciliation,
    reconciliation_history,
    reconciliation_metrics,
)
from fieldsync.integrations.errors import TransientError
from fieldsync.models.reconciliation_log import ReconciliationType
from fieldsync.schemas.api_responses import ReconciliationRequest
from fieldsync.services.reconciliation import ReconciliationEngine


@pytest.fixture
def recon(fake_client, sync_service, session_factory):
    return ReconciliationEngine(fake_client, sync_service, session_factory=session_factory)


class TestTriggers:
    async def test_cron_defaults_to_incremental(self, recon, mock_alerts):
        response = await cron_reconciliation(body=None, engine=recon)

        assert response.success is True
        assert response.result["type"] == ReconciliationType.INCREMENTAL
        assert response.result["status"] == "completed"

    async def test_admin_defaults_to_emergency(self, recon, mock_alerts):
        response = await admin_reconciliation(body=None, engine=recon)
        assert response.result["type"] == ReconciliationType.EMERGENCY

    async def test_explicit_type(self, recon, mock_alerts):
        response = await cron_reconciliation(body=ReconciliationRequest(type="full"), engine=recon)
        assert response.result["type"] == ReconciliationType.FULL

    async def test_invalid_type(self, recon):
        with pytest.raises(HTTPException) as exc:
            await admin_reconciliation(body=ReconciliationRequest(type="hourly"), engine=recon)
        assert exc.value.status_code == 400

    async def test_failed_run_reports_unsuccessful(self, recon, fake_client, mock_alerts):
        fake_client.fail_on["get_companies"] = RuntimeError("boom")

        response = await admin_reconciliation(body=ReconciliationRequest(type="full"), engine=recon)

        assert response.success is False
        assert response.result["status"] == "failed"
        assert "boom" in response.result["error_message"]


class TestReporting:
    async def test_history_with_statistics(self, recon, mock_alerts):
        await recon.run(ReconciliationType.FULL)
        await recon.run(ReconciliationType.INCREMENTAL)

        result = await reconciliation_history(limit=50, type=None, engine=recon)

        assert len(result["data"]["history"]) == 2
        assert result["data"]["statistics"]["total_reconciliations"] == 2

    async def test_history_type_filter(self, recon, mock_alerts):
        await recon.run(ReconciliationType.FULL)
        result = await reconciliation_history(limit=50, type="incremental", engine=recon)
        assert result["data"]["history"] == []

    async def test_history_invalid_type(self, recon):
        with pytest.raises(HTTPException) as exc:
            await reconciliation_history(limit=50, type="monthly", engine=recon)
        assert exc.value.status_code == 400

    async def test_metrics(self, recon):
        result = await reconciliation_metrics(engine=recon)
        assert result["data"]["running"] == 0
        assert "totals" in result["data"]

    async def test_checks_report_without_repair(self, recon, fake_client):
        fake_client.add_company("c-1")

        result = await consistency_checks(engine=recon)

        assert result["data"]["issues"][0]["category"] == "missing_locally"
        assert (await recon.perform_consistency_checks()).issues  # still unrepaired

    async def test_checks_upstream_failure(self, recon):
        recon.perform_consistency_checks = AsyncMock(side_effect=TransientError("down"))
        with pytest.raises(HTTPException) as exc:
            await consistency_checks(engine=recon)
        assert exc.value.status_code == 502
