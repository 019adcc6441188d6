import asyncio
import sqlite3

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from provisioner.errors import CredentialError
from tests.fakes import FakeProviderClient


async def wait_for_run(app, run_id: str, timeout: float = 5.0) -> None:
    task = app.state.run_tasks.get(run_id)
    if task is not None:
        await asyncio.wait_for(task, timeout=timeout)


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"ok": True}


@pytest.mark.asyncio
async def test_record_lifecycle(client):
    res = await client.post("/api/records", json={"client": "Acme", "criteria": {"industries": ["Software"]}})
    assert res.status_code == 200
    record = res.json()
    assert record["status"] == "pending_review"
    assert record["table_name"].startswith("Acme - Find Companies ")
    record_id = record["id"]

    res = await client.post(f"/api/records/{record_id}/approve")
    assert res.status_code == 200
    assert res.json()["status"] == "approved"

    res = await client.post(f"/api/records/{record_id}/approve")
    assert res.status_code == 409

    res = await client.post(f"/api/records/{record_id}/submit")
    assert res.status_code == 200
    result = res.json()
    assert result["status"] == "submitted"
    assert result["table_id"] == "tbl_1"
    assert result["already_submitted"] is False

    res = await client.post(f"/api/records/{record_id}/submit")
    assert res.json()["already_submitted"] is True
    assert client.fake_provider.names().count("create_table") == 1

    res = await client.get(f"/api/records/{record_id}")
    assert res.json()["provider_table_id"] == "tbl_1"

    res = await client.get("/api/records", params={"client": "Acme", "status": "submitted"})
    assert [item["id"] for item in res.json()["records"]] == [record_id]


@pytest.mark.asyncio
async def test_failed_record_needs_retry_before_resubmit(app_factory):
    app, fake = app_factory(fake_provider=FakeProviderClient(match_count=0))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/records", json={"client": "Acme", "status": "approved"})
            record_id = res.json()["id"]

            res = await client.post(f"/api/records/{record_id}/submit")
            assert res.status_code == 200
            assert res.json()["status"] == "failed"
            assert res.json()["phase"] == "preview"
            assert res.json()["suggestions"]

            res = await client.post(f"/api/records/{record_id}/submit")
            assert res.status_code == 409

            fake.match_count = 3
            res = await client.post(f"/api/records/{record_id}/retry")
            assert res.status_code == 200
            assert res.json()["status"] == "approved"

            res = await client.post(f"/api/records/{record_id}/submit")
            assert res.json()["status"] == "submitted"

            res = await client.post(f"/api/records/{record_id}/retry")
            assert res.status_code == 409


@pytest.mark.asyncio
async def test_missing_record_is_404(client):
    assert (await client.get("/api/records/nope")).status_code == 404
    assert (await client.post("/api/records/nope/submit")).status_code == 404
    assert (await client.post("/api/records/nope/approve")).status_code == 404


@pytest.mark.asyncio
async def test_missing_credential_is_401(client):
    client.fake_provider.errors["preview"] = CredentialError("Provider session is not available.")
    res = await client.post("/api/records", json={"client": "Acme", "status": "approved"})
    res = await client.post(f"/api/records/{res.json()['id']}/submit")
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_session_refresh(client):
    res = await client.put("/api/session", json={"session_cookie": "claysession=fresh"})
    assert res.status_code == 200
    assert res.json()["expires_at"].endswith("Z")
    assert await client.app.state.engine.sessions.current() == "claysession=fresh"

    res = await client.put("/api/session", json={"session_cookie": "x", "expires_at": "not-a-date"})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_validate_plan(client):
    plan = {
        "steps": [
            {"order": 2, "type": "add_column", "dependsOn": [1]},
            {"order": 1, "type": "create_workbook"},
        ],
        "estimatedTotalCredits": 4,
    }
    res = await client.post("/api/plans/validate", json=plan)
    assert res.status_code == 200
    assert res.json()["order"] == [1, 2]

    plan["steps"][1]["dependsOn"] = [2]
    res = await client.post("/api/plans/validate", json=plan)
    assert res.status_code == 400
    assert res.json()["detail"]["kind"] == "cycle_detected"

    res = await client.post("/api/plans/validate", json={"steps": []})
    assert res.status_code == 400
    assert res.json()["detail"]["kind"] == "empty_plan"


@pytest.mark.asyncio
async def test_run_plan_records_outcomes(client):
    client.fake_provider.operations["/tables/tbl_1/fields"] = (500, {"error": "bad field"})
    res = await client.post("/api/records", json={"client": "Acme", "status": "approved"})
    record_id = res.json()["id"]
    plan = {
        "steps": [
            {"order": 1, "type": "add_source", "payload": {"record_id": record_id}},
            {
                "order": 2,
                "type": "add_column",
                "dependsOn": [1],
                "apiEndpoint": "/tables/{{TABLE_ID}}/fields",
                "apiMethod": "POST",
            },
            {"order": 3, "type": "run_enrichment", "dependsOn": [2], "apiEndpoint": "/tables/{{TABLE_ID}}/run"},
        ]
    }
    res = await client.post("/api/plans/run", json={"plan": plan})
    assert res.status_code == 200
    run_id = res.json()["run_id"]
    await wait_for_run(client.app, run_id)
    run = (await client.get(f"/api/runs/{run_id}")).json()

    assert run["status"] == "completed_with_errors"
    states = {step["order"]: step["state"] for step in run["steps"]}
    assert states == {1: "succeeded", 2: "failed", 3: "skipped"}
    assert run["plan"]["steps"][0]["payload"]["record_id"] == record_id


@pytest.mark.asyncio
async def test_run_plan_rejects_invalid_plan(client):
    res = await client.post("/api/plans/run", json={"plan": {"steps": [{"order": 1, "type": "nope"}]}})
    assert res.status_code == 400
    assert res.json()["detail"]["kind"] == "invalid_plan"
    assert (await client.get("/api/runs/missing")).status_code == 404


@pytest.mark.asyncio
async def test_run_plan_crash_marks_run_failed(client, monkeypatch):
    async def broken_save(run_id, outcome):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(client.app.state.engine.runs, "save_outcome", broken_save)
    plan = {"steps": [{"order": 1, "type": "create_workbook", "apiEndpoint": "/workspaces/{{WORKSPACE_ID}}/tables"}]}
    res = await client.post("/api/plans/run", json={"plan": plan})
    assert res.status_code == 200
    run_id = res.json()["run_id"]
    await wait_for_run(client.app, run_id)

    run = (await client.get(f"/api/runs/{run_id}")).json()
    assert run["status"] == "failed"
    assert run["finished_at"]
    assert run_id not in client.app.state.run_tasks
