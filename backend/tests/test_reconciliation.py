"""Reconciliation service and endpoint tests."""

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update

from app.database import utcnow
from app.models.tenant.batch import Batch
from app.models.tenant.batch_ancestry import BatchAncestry
from app.models.tenant.reconciliation_alert import ReconciliationAlert
from app.schemas.batch import DumpRequest, MoveRequest
from app.services import ledger
from app.services.reconciliation import (
    reconcile_batch,
    run_ledger_reconciliation,
    stock_movements,
)

from conftest import ORG_A, make_headers


async def _set_quantity(session_factory, batch_id: str, quantity: int):
    """Write a quantity behind the ledger's back."""
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Batch).where(Batch.id == batch_id).values(quantity=quantity)
            )


async def _run(session_factory, org_id: str = ORG_A) -> dict:
    async with session_factory() as session:
        async with session.begin():
            return await run_ledger_reconciliation(session, org_id)


async def _alerts(session_factory, **filters) -> list[ReconciliationAlert]:
    async with session_factory() as session:
        stmt = select(ReconciliationAlert)
        for column, value in filters.items():
            stmt = stmt.where(getattr(ReconciliationAlert, column) == value)
        return list((await session.execute(stmt)).scalars().all())


@pytest.mark.integration
@pytest.mark.asyncio
class TestReconciliationService:
    async def test_clean_ledger_has_no_alerts(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=100)
        await run_tx(lambda tx: ledger.move_batch(tx, batch.id, MoveRequest(destination="L2", quantity=25)))
        await run_tx(lambda tx: ledger.dump(tx, batch.id, DumpRequest(units=5, reason="pest")))

        summary = await _run(session_factory)

        assert summary["batches_checked"] == 2
        assert summary["total_alerts"] == 0
        assert await _alerts(session_factory) == []

    async def test_quantity_drift_is_reported(self, make_batch, session_factory):
        batch = await make_batch(quantity=100)
        await _set_quantity(session_factory, batch.id, 80)

        summary = await _run(session_factory)

        assert summary["by_type"] == {"quantity_drift": 1}
        alert = (await _alerts(session_factory, alert_type="quantity_drift"))[0]
        assert alert.expected_value == 100
        assert alert.actual_value == 80
        assert alert.variance == -20
        assert alert.severity == "critical"
        assert alert.entity_refs["batch_id"] == batch.id

    async def test_fixed_drift_is_auto_resolved(self, make_batch, session_factory):
        batch = await make_batch(quantity=100)
        await _set_quantity(session_factory, batch.id, 97)
        await _run(session_factory)

        await _set_quantity(session_factory, batch.id, 100)
        summary = await _run(session_factory)

        assert summary["total_alerts"] == 0
        alert = (await _alerts(session_factory))[0]
        assert alert.status == "resolved"
        assert alert.resolved_at is not None

    async def test_ancestry_problems_are_reported(self, make_batch, session_factory):
        a = await make_batch(quantity=10)
        b = await make_batch(quantity=10)
        async with session_factory() as session:
            async with session.begin():
                for parent, child in ((a.id, b.id), (b.id, a.id), ("gone", a.id)):
                    session.add(BatchAncestry(
                        org_id=ORG_A,
                        parent_batch_id=parent,
                        child_batch_id=child,
                        kind="split",
                        created_at=utcnow(),
                    ))

        summary = await _run(session_factory)

        assert summary["by_type"] == {"ancestry_cycle": 1, "ancestry_ghost": 1}
        cycle = (await _alerts(session_factory, alert_type="ancestry_cycle"))[0]
        assert cycle.severity == "critical"

    async def test_other_org_is_not_checked(self, make_batch, session_factory):
        batch = await make_batch(quantity=100, org_id="org-b")
        await _set_quantity(session_factory, batch.id, 1)

        summary = await _run(session_factory)

        assert summary["batches_checked"] == 0
        assert summary["total_alerts"] == 0

    async def test_stock_movements_running_balance(self, make_batch, run_tx, session_factory):
        batch = await make_batch(quantity=100)
        await run_tx(lambda tx: ledger.dump(tx, batch.id, DumpRequest(units=10, reason="pest")))
        await run_tx(lambda tx: ledger.move_batch(tx, batch.id, MoveRequest(destination="L2", quantity=30)))
        await run_tx(lambda tx: ledger.set_status(tx, batch.id, "ready"))

        async with session_factory() as session:
            movements = await stock_movements(session, ORG_A, batch.id)
            result = await reconcile_batch(session, ORG_A, batch.id)

        assert [(m["type"], m["quantity"], m["balance"]) for m in movements] == [
            ("INITIAL", 100, 100),
            ("DUMP", -10, 90),
            ("MOVE_PARTIAL", -30, 60),
        ]
        assert result["event_total"] == -40
        assert result["actual_quantity"] == 60
        assert result["balanced"] is True


@pytest.mark.api
@pytest.mark.asyncio
class TestReconciliationEndpoints:
    """Reconciliation endpoints are authenticated and tenant-scoped."""

    async def test_run_requires_auth(self, client: AsyncClient):
        resp = await client.post("/api/reconciliation/run")
        assert resp.status_code == 401

    async def test_alerts_list_requires_auth(self, client: AsyncClient):
        resp = await client.get("/api/reconciliation/alerts")
        assert resp.status_code == 401

    async def test_alert_update_requires_auth(self, client: AsyncClient):
        resp = await client.patch(
            "/api/reconciliation/alerts/fake-id",
            json={"status": "acknowledged"},
        )
        assert resp.status_code == 401

    async def test_requires_permission(self, client: AsyncClient):
        resp = await client.post(
            "/api/reconciliation/run", headers=make_headers(permissions=["batch.read"])
        )
        assert resp.status_code == 403

    async def test_run_list_and_resolve(self, client: AsyncClient, make_batch, session_factory, auth_headers):
        batch = await make_batch(quantity=100)
        await _set_quantity(session_factory, batch.id, 50)

        resp = await client.post("/api/reconciliation/run", headers=auth_headers)
        assert resp.status_code == 201
        assert resp.json()["by_type"] == {"quantity_drift": 1}

        resp = await client.get(
            "/api/reconciliation/alerts",
            params={"status": "open", "alert_type": "quantity_drift"},
            headers=auth_headers,
        )
        alerts = resp.json()
        assert len(alerts) == 1

        resp = await client.patch(
            f"/api/reconciliation/alerts/{alerts[0]['id']}",
            json={"status": "resolved", "resolution_note": "recount"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "resolved"
        assert body["resolved_by"] == "user-1"
        assert body["resolution_note"] == "recount"

    async def test_invalid_alert_status(self, client: AsyncClient, auth_headers):
        resp = await client.patch(
            "/api/reconciliation/alerts/any",
            json={"status": "ignored"},
            headers=auth_headers,
        )
        assert resp.status_code == 422

    async def test_single_batch(self, client: AsyncClient, make_batch, auth_headers, other_org_headers):
        batch = await make_batch(quantity=100)

        resp = await client.get(f"/api/reconciliation/batches/{batch.id}", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["balanced"] is True

        resp = await client.get(
            f"/api/reconciliation/batches/{batch.id}", headers=other_org_headers
        )
        assert resp.status_code == 404
