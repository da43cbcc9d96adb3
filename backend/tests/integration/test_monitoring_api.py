"""Integration tests: run history, chain status, health and metrics."""
import pytest

pytestmark = pytest.mark.asyncio

ENTRY = {"actor_id": "u", "action": "login", "resource_type": "session"}


async def test_runs_listed_after_verification(client):
    await client.post("/api/v1/chain/entries", json=ENTRY)
    await client.post("/api/v1/chain/verify")
    await client.post("/api/v1/chain/verify", params={"record": "false"})
    resp = await client.get("/api/v1/verification/runs")
    assert resp.status_code == 200
    runs = resp.json()
    assert len(runs) == 1
    assert runs[0]["status"] == "intact"
    assert runs[0]["source"] == "api"


async def test_summary(client, tamper):
    await client.post("/api/v1/chain/entries", json=ENTRY)
    await client.post("/api/v1/chain/verify")
    await tamper(1, actor_id="someone-else")
    await client.post("/api/v1/chain/verify")
    body = (await client.get("/api/v1/verification/runs/summary")).json()
    assert body["total_runs"] == 2
    assert body["failed_runs"] == 1
    assert body["success_rate"] == 50.0
    assert body["failures"][0]["broken_at_sequence_id"] == 1


async def test_status_levels(client, tamper):
    body = (await client.get("/api/v1/verification/status")).json()
    assert body["level"] == "yellow"
    assert body["latest_run"] is None

    await client.post("/api/v1/chain/entries", json=ENTRY)
    await client.post("/api/v1/chain/verify")
    assert (await client.get("/api/v1/verification/status")).json()["level"] == "green"

    await tamper(1, action="logout")
    await client.post("/api/v1/chain/verify")
    body = (await client.get("/api/v1/verification/status")).json()
    assert body["level"] == "red"
    assert body["latest_run"]["broken_at_sequence_id"] == 1


async def test_health(client, secret_store):
    body = (await client.get("/health")).json()
    assert body["status"] == "healthy"
    assert body["database"] == "ok"
    assert body["active_key_version"] == 1

    secret_store.forget(1)
    body = (await client.get("/health")).json()
    assert body["status"] == "degraded"
    assert body["audit_key"] == "missing"


async def test_metrics_exposed(client):
    await client.post("/api/v1/chain/entries", json=ENTRY)
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "auditchain_appends_total" in resp.text
