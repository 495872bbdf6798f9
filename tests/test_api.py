from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from freezegun import freeze_time
from httpx import ASGITransport, AsyncClient

from coverage_escalation.api import create_app
from coverage_escalation.models import BroadcastStatus
from coverage_escalation.state import broadcast_db, rule_sets


@pytest_asyncio.fixture
async def client():
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture(autouse=True)
def clean_db():
    broadcast_db.clear()
    rule_sets.clear()
    yield
    broadcast_db.clear()
    rule_sets.clear()


BROADCAST = {
    "shift_id": "s1",
    "location_id": "loc-1",
    "urgency": "urgent",
    "response_deadline_minutes": 125,
    "partners_notified": 4,
    "shift_date": "2025-01-02",
    "shift_time": "07:00 - 15:00",
    "role": "RN",
}


async def create_broadcast(client) -> dict:
    resp = await client.post("/broadcasts", json=BROADCAST)
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_broadcast(client):
    with freeze_time("2025-01-01 12:00:00"):
        data = await create_broadcast(client)

    record = data["record"]
    assert record["shift_id"] == "s1"
    assert record["status"] == "pending"
    assert record["current_tier"] == 1
    assert record["urgency"] == "urgent"
    assert record["broadcasted_at"].replace("+00:00", "Z") == "2025-01-01T12:00:00Z"
    assert record["auto_escalate_at"].replace("+00:00", "Z") == "2025-01-01T12:30:00Z"
    assert [e["kind"] for e in record["escalation_history"]] == ["initial_broadcast"]

    assert data["time_remaining"] == {
        "minutes": 125,
        "is_overdue": False,
        "display_text": "2h 5m remaining",
    }
    assert broadcast_db.get(record["id"]) is not None


@pytest.mark.asyncio
async def test_create_broadcast_rejects_invalid_tiers(client):
    resp = await client.post("/broadcasts", json={**BROADCAST, "max_tiers": 0})
    assert resp.status_code == 422
    assert broadcast_db.all() == []


@pytest.mark.asyncio
async def test_escalation_run(client):
    """Running the tick escalates once the 30-minute threshold passes, and only once."""
    with patch("coverage_escalation.notifier.notify_tier_partners", new_callable=AsyncMock) as mock_notify:
        with freeze_time("2025-01-01 12:00:00") as frozen_time:
            record_id = (await create_broadcast(client))["record"]["id"]

            frozen_time.tick(timedelta(minutes=29))
            resp = await client.post("/escalations/run")
            assert resp.json()["escalated"] == 0
            assert mock_notify.await_count == 0

            frozen_time.tick(timedelta(minutes=1))
            resp = await client.post("/escalations/run")
            summary = resp.json()
            assert summary["evaluated"] == 1
            assert summary["escalated"] == 1
            assert mock_notify.await_count == 1
            assert mock_notify.await_args.args[1] == 2

            # Idempotency check: run again at the same time
            resp = await client.post("/escalations/run")
            assert resp.json()["escalated"] == 0
            assert mock_notify.await_count == 1

            resp = await client.get(f"/broadcasts/{record_id}")
            data = resp.json()
            assert data["record"]["current_tier"] == 2
            assert data["time_remaining"]["display_text"] == "1h 35m remaining"
            kinds = [e["kind"] for e in data["record"]["escalation_history"]]
            assert kinds == ["initial_broadcast", "tier_escalate"]


@pytest.mark.asyncio
async def test_fill_stops_escalation(client):
    with freeze_time("2025-01-01 12:00:00") as frozen_time:
        record_id = (await create_broadcast(client))["record"]["id"]

        filled_by = {
            "partner_id": "agency-1",
            "partner_name": "Acme Staffing",
            "candidate_id": "cand-1",
            "candidate_name": "Alice",
        }
        resp = await client.post(f"/broadcasts/{record_id}/fill", json=filled_by)
        assert resp.status_code == 200
        record = resp.json()["record"]
        assert record["status"] == "filled"
        assert record["filled_by"]["candidate_name"] == "Alice"

        # Second fill is rejected
        resp = await client.post(f"/broadcasts/{record_id}/fill", json=filled_by)
        assert resp.status_code == 409

        frozen_time.tick(timedelta(hours=3))
        resp = await client.post("/escalations/run")
        assert resp.json()["evaluated"] == 0
        assert broadcast_db.get(record_id).status == BroadcastStatus.FILLED


@pytest.mark.asyncio
async def test_cancel(client):
    record_id = (await create_broadcast(client))["record"]["id"]

    resp = await client.post(f"/broadcasts/{record_id}/cancel", json={"reason": "Covered internally"})
    assert resp.status_code == 200
    record = resp.json()["record"]
    assert record["status"] == "cancelled"
    assert record["escalation_history"][-1]["reason"] == "Covered internally"

    resp = await client.post(f"/broadcasts/{record_id}/escalate")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_manual_escalate_notifies_next_tier(client):
    record_id = (await create_broadcast(client))["record"]["id"]

    with patch("coverage_escalation.notifier.notify_tier_partners", new_callable=AsyncMock) as mock_notify, \
         patch("coverage_escalation.notifier.alert_supervisor", new_callable=AsyncMock) as mock_alert:
        resp = await client.post(
            f"/broadcasts/{record_id}/escalate",
            json={"reason": "No agency picked up", "partner_ids": ["agency-9"]},
        )

    assert resp.status_code == 200
    record = resp.json()["record"]
    assert record["current_tier"] == 2
    assert record["partners_notified"] == 5
    event = record["escalation_history"][-1]
    assert event["kind"] == "manual_escalate"
    assert (event["from_tier"], event["to_tier"]) == (1, 2)
    assert event["reason"] == "No agency picked up"
    mock_notify.assert_awaited_once()
    assert mock_notify.await_args.args[1] == 2
    mock_alert.assert_not_awaited()


@pytest.mark.asyncio
async def test_manual_escalate_rejected_at_last_tier(client):
    resp = await client.post("/broadcasts", json={**BROADCAST, "max_tiers": 1})
    record_id = resp.json()["record"]["id"]

    with patch("coverage_escalation.notifier.notify_tier_partners", new_callable=AsyncMock) as mock_notify:
        resp = await client.post(f"/broadcasts/{record_id}/escalate")

    assert resp.status_code == 409
    assert "maximum tier" in resp.json()["detail"]
    mock_notify.assert_not_awaited()
    record = broadcast_db.get(record_id)
    assert record.current_tier == 1
    assert len(record.escalation_history) == 1


@pytest.mark.asyncio
async def test_create_broadcast_with_partner_ids(client):
    body = {k: v for k, v in BROADCAST.items() if k != "partners_notified"}
    resp = await client.post("/broadcasts", json={**body, "partner_ids": ["agency-1", "agency-2"]})

    record = resp.json()["record"]
    assert record["partners_notified"] == 2
    assert record["escalation_history"][0]["partners_notified"] == ["agency-1", "agency-2"]



@pytest.mark.asyncio
async def test_unknown_broadcast(client):
    resp = await client.get("/broadcasts/missing")
    assert resp.status_code == 404

    resp = await client.post("/broadcasts/missing/cancel")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_record_response(client):
    record_id = (await create_broadcast(client))["record"]["id"]

    resp = await client.post(
        f"/broadcasts/{record_id}/responses",
        json={
            "partner_id": "agency-1",
            "partner_name": "Acme Staffing",
            "responded_at": "2025-01-01T12:10:00Z",
            "candidates": [
                {
                    "id": "sub-1",
                    "candidate_id": "cand-1",
                    "candidate_name": "Alice",
                    "match_score": 92,
                    "submitted_at": "2025-01-01T12:10:00Z",
                }
            ],
        },
    )

    assert resp.status_code == 200
    record = resp.json()["record"]
    assert record["partners_responded"] == 1
    assert record["responses"][0]["candidates"][0]["candidate_name"] == "Alice"


@pytest.mark.asyncio
async def test_list_by_status(client):
    first = (await create_broadcast(client))["record"]["id"]
    await create_broadcast(client)
    await client.post(f"/broadcasts/{first}/cancel")

    resp = await client.get("/broadcasts", params={"status": "pending"})
    assert len(resp.json()) == 1

    resp = await client.get("/broadcasts")
    assert len(resp.json()) == 2


@pytest.mark.asyncio
async def test_location_rules(client):
    resp = await client.get("/locations/loc-1/rules")
    data = resp.json()
    assert data["location_id"] == "loc-1"
    assert [r["trigger_after_minutes"] for r in data["rules"]] == [30, 60, 120, 180, 240]
    assert data["rules"][0]["id"] == "escalate_tier@30m"
