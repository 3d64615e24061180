"""
Admin API Tests.

============================================================
PURPOSE
============================================================
Tests for the FastAPI operator surface, driven in-process
through httpx against the shared test engine.

TEST CATEGORIES:
- Error mapping tests: engine exceptions to HTTP status
- Position tests: list, close, bulk risk config, purge
- Signal tests: start, abort, summary
- Scheduler tests: list, pause, execute
- Reconciliation and account tests

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from core.exceptions import CooldownActive, InvalidRiskConfig, PositionNotFound, SellAlreadyPending
from core.types import Side
from dashboard.main import create_app, status_for


@pytest_asyncio.fixture
async def client(engine):
    app = create_app(engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


# ============================================================
# ERROR MAPPING TESTS
# ============================================================

class TestErrorMapping:
    """Tests for status_for()."""

    def test_most_specific_class_wins(self, clock):
        assert status_for(PositionNotFound(1)) == 404
        assert status_for(InvalidRiskConfig("bad")) == 422
        assert status_for(SellAlreadyPending(1)) == 409
        assert status_for(CooldownActive(1, "BTCUSDT", "BUY", until=clock.now())) == 409

    @pytest.mark.asyncio
    async def test_not_found_body(self, client):
        response = await client.get("/positions/999")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "POSITION_NOT_FOUND"
        assert body["context"]["position_id"] == 999

    @pytest.mark.asyncio
    async def test_value_error_is_422(self, client):
        response = await client.get("/positions", params={"sort_by": "nonsense"})

        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_REQUEST"


# ============================================================
# HEALTH TESTS
# ============================================================

class TestHealth:
    """Tests for /health."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["database"] is True
        assert data["jobs"] == ["risk_exit", "signal_confirmation", "reconciliation"]


# ============================================================
# POSITION TESTS
# ============================================================

class TestPositionsAPI:
    """Tests for /positions."""

    @pytest.mark.asyncio
    async def test_list_filters_by_symbol(self, client, open_position):
        await open_position(symbol="BTCUSDT")
        eth = await open_position(symbol="ETHUSDT", price="2000")

        response = await client.get("/positions", params={"symbol": "ETHUSDT"})

        body = response.json()
        assert body["count"] == 1
        assert body["data"][0]["id"] == eth.id
        assert Decimal(body["data"][0]["qty_total"]) == eth.qty_total

    @pytest.mark.asyncio
    async def test_close_then_second_close_conflicts(self, client, open_position):
        position = await open_position(qty="2")

        first = await client.post(f"/positions/{position.id}/close")
        second = await client.post(f"/positions/{position.id}/close")

        assert first.status_code == 202
        assert first.json()["data"]["target_position_id"] == position.id
        assert second.status_code == 409
        assert second.json()["error_code"] == "SELL_ALREADY_PENDING"

    @pytest.mark.asyncio
    async def test_bulk_risk_config(self, client, open_position):
        first = await open_position()
        second = await open_position()

        response = await client.post("/positions/bulk-risk-config", json={
            "position_ids": [first.id, second.id],
            "sl_enabled": True,
            "sl_pct": "3",
        })

        assert response.status_code == 200
        assert response.json()["count"] == 2
        assert all(p["sl_enabled"] for p in response.json()["data"])

    @pytest.mark.asyncio
    async def test_bulk_risk_config_is_all_or_nothing(self, client, engine, open_position):
        position = await open_position()

        response = await client.post("/positions/bulk-risk-config", json={
            "position_ids": [position.id],
            "tsg_enabled": True,
            "tsg_activation_pct": "2",
        })

        assert response.status_code == 422
        assert not (await engine.store.get(position.id)).tsg_enabled

    @pytest.mark.asyncio
    async def test_bulk_risk_config_rejects_unknown_fields(self, client, open_position):
        position = await open_position()

        response = await client.post("/positions/bulk-risk-config", json={
            "position_ids": [position.id],
            "stop_loss": "3",
        })

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_purge_linked_position_conflicts(self, client, open_position):
        position = await open_position()

        response = await client.delete(f"/positions/{position.id}")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_lock_sell_by_webhook(self, client, open_position):
        position = await open_position()

        response = await client.post(f"/positions/{position.id}/lock-sell-by-webhook", json={"locked": True})

        assert response.json()["data"]["lock_sell_by_webhook"] is True


# ============================================================
# SIGNAL TESTS
# ============================================================

class TestSignalsAPI:
    """Tests for /signals."""

    @pytest.mark.asyncio
    async def test_start_duplicate_and_abort(self, client):
        payload = {"exchange_account_id": 1, "symbol": "btcusdt", "side": "BUY", "qty": "1"}

        started = await client.post("/signals", json=payload)
        duplicate = await client.post("/signals", json=payload)
        monitor_id = started.json()["data"]["id"]
        aborted = await client.post(f"/signals/{monitor_id}/abort", json={"reason": "test"})

        assert started.status_code == 201
        assert started.json()["data"]["symbol"] == "BTCUSDT"
        assert duplicate.status_code == 409
        assert duplicate.json()["error_code"] == "MONITOR_ALREADY_ACTIVE"
        assert aborted.json()["data"]["phase"] == "CANCELLED_MANUAL"

    @pytest.mark.asyncio
    async def test_buy_without_qty_is_rejected(self, client):
        response = await client.post("/signals", json={"exchange_account_id": 1, "symbol": "BTCUSDT", "side": "BUY"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_monitor(self, client):
        response = await client.get("/signals/nope")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_and_summary(self, client):
        await client.post("/signals", json={"exchange_account_id": 1, "symbol": "ETHUSDT", "side": "BUY", "qty": "1"})

        listed = await client.get("/signals", params={"active_only": True})
        summary = await client.get("/signals/summary")

        assert listed.json()["count"] == 1
        assert summary.json()["data"]["active"] == 1


# ============================================================
# SCHEDULER TESTS
# ============================================================

class TestSchedulerAPI:
    """Tests for /scheduler."""

    @pytest.mark.asyncio
    async def test_list_jobs(self, client):
        response = await client.get("/scheduler/jobs")

        assert response.json()["count"] == 3

    @pytest.mark.asyncio
    async def test_pause_resume_and_execute(self, client):
        paused = await client.post("/scheduler/jobs/risk_exit/pause")
        executed = await client.post("/scheduler/jobs/risk_exit/execute")
        resumed = await client.post("/scheduler/jobs/risk_exit/resume")

        assert paused.json()["data"]["enabled"] is False
        assert executed.json()["success"] is True
        assert executed.json()["data"]["trigger"] == "MANUAL"
        assert resumed.json()["data"]["enabled"] is True
        assert resumed.json()["data"]["total_runs"] == 1

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        response = await client.post("/scheduler/jobs/missing/pause")

        assert response.status_code == 404


# ============================================================
# RECONCILIATION AND ACCOUNT TESTS
# ============================================================

class TestReconciliationAPI:
    """Tests for /reconciliation and /executions."""

    @pytest.mark.asyncio
    async def test_orphan_listing_and_ignore(self, client, engine, make_fill):
        orphan = await engine.linker.apply_fill(make_fill(Side.SELL))

        listed = await client.get("/reconciliation/orphaned")
        ignored = await client.post(f"/reconciliation/orphaned/{orphan.execution.id}/ignore", json={"ignored": True})
        after = await client.get("/executions/orphaned")

        assert listed.json()["data"][0]["reason"] == "NO_POSITION_ID"
        assert ignored.json()["data"]["ignored"] is True
        assert after.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_detect_missing_window(self, client, paper, make_fill, clock):
        paper.record_external_fill(make_fill(Side.BUY, order_id="ext-1", filled_at=clock.now() - timedelta(minutes=10)))

        response = await client.post("/reconciliation/missing/detect", json={"exchange_account_id": 1, "hours": 2})

        assert response.status_code == 200
        assert response.json()["message"] == "1 missing fills"

    @pytest.mark.asyncio
    async def test_audit(self, client, open_position):
        await open_position()

        response = await client.get("/reconciliation/audit")

        assert response.json()["success"] is True
        assert response.json()["data"]["checked"] == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, client):
        response = await client.post("/executions/jobs/4242/cancel")

        assert response.status_code == 404


class TestAccountsAPI:
    """Tests for /accounts."""

    @pytest.mark.asyncio
    async def test_update_defaults(self, client):
        response = await client.put("/accounts/1/defaults", json={
            "trade_mode": "SIMULATION",
            "grouping_window_minutes": 15,
            "risk": {"sl_enabled": True, "sl_pct": "4"},
        })

        data = response.json()["data"]
        assert data["trade_mode"] == "SIMULATION"
        assert data["grouping_window_minutes"] == 15
        assert Decimal(data["risk"]["sl_pct"]) == Decimal("4")

    @pytest.mark.asyncio
    async def test_string_false_keeps_rule_disabled(self, client):
        response = await client.put("/accounts/1/defaults", json={
            "risk": {"sl_enabled": "false", "sl_pct": "4"},
        })

        assert response.status_code == 200
        assert response.json()["data"]["risk"]["sl_enabled"] is False

    @pytest.mark.asyncio
    async def test_invalid_risk_values_are_422(self, client):
        not_a_number = await client.put("/accounts/1/defaults", json={
            "risk": {"sl_enabled": True, "sl_pct": "NaN"},
        })
        not_a_flag = await client.put("/accounts/1/defaults", json={
            "risk": {"sl_enabled": "off", "sl_pct": "4"},
        })

        assert not_a_number.status_code == 422
        assert not_a_number.json()["error_code"] == "INVALID_RISK_CONFIG"
        assert not_a_flag.status_code == 422

    @pytest.mark.asyncio
    async def test_update_confirmation_config(self, client):
        updated = await client.put("/accounts/1/confirmation/SELL", json={"fall_trigger_pct": "0.9"})
        rejected = await client.put("/accounts/1/confirmation/SELL", json={"rise_trigger_pct": "0.9"})
        current = await client.get("/accounts/1/confirmation")

        assert Decimal(updated.json()["data"]["trigger_pct"]) == Decimal("0.9")
        assert rejected.status_code == 422
        assert Decimal(current.json()["data"]["SELL"]["trigger_pct"]) == Decimal("0.9")
