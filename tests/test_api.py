"""Tests for the HTTP endpoints.

The routers are exercised through the full application with a runtime bound
to the per-test database. The lifespan is not run, so no timers or workers
are active unless a test starts them.
"""

import httpx
import pytest
import pytest_asyncio

from kpisync.core.config import Settings
from kpisync.main import create_app
from kpisync.services.runtime import SyncRuntime
from kpisync.services.worker import ExecutorRegistry

TENANT = {"X-Tenant-Id": "1"}
OTHER_TENANT = {"X-Tenant-Id": "2"}


@pytest.fixture
def runtime(session_factory, fake_executor, notifier):
    settings = Settings(
        encryption_key_salt="api-test-salt",
        tz="Asia/Kolkata",
        default_cron="0 2 * * *",
        discord_webhook_url=None,
        telegram_bot_token=None,
    )
    return SyncRuntime(settings, session_factory, ExecutorRegistry({"meta": fake_executor}), notifier=notifier)


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app()
    app.state.runtime = runtime
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["scheduler_running"] is False

    @pytest.mark.asyncio
    async def test_config_hides_secrets(self, client):
        resp = await client.get("/api/config")
        assert resp.status_code == 200
        data = resp.json()
        assert data["executors"] == ["meta"]
        assert "encryption_key_salt" not in data

    @pytest.mark.asyncio
    async def test_runtime_missing(self):
        app = create_app()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.get("/api/health")
        assert resp.status_code == 503


class TestSchedules:

    @pytest.mark.asyncio
    async def test_create_and_list(self, client):
        resp = await client.post(
            "/api/schedules",
            json={"service": "meta", "cron_expression": "0 2 * * *", "timezone": "Asia/Kolkata"},
            headers=TENANT,
        )
        assert resp.status_code == 201
        created = resp.json()
        assert created["tenant_id"] == 1
        assert created["next_run_at"] is not None

        resp = await client.get("/api/schedules", headers=TENANT)
        assert [s["service"] for s in resp.json()] == ["meta"]

        resp = await client.get("/api/schedules", headers=OTHER_TENANT)
        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_create_uses_configured_defaults(self, client):
        resp = await client.post("/api/schedules", json={"service": "shopify"}, headers=TENANT)
        assert resp.status_code == 201
        created = resp.json()
        assert created["cron_expression"] == "0 2 * * *"
        assert created["timezone"] == "Asia/Kolkata"

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(self, client):
        body = {"service": "ga4", "cron_expression": "0 2 * * *"}
        assert (await client.post("/api/schedules", json=body, headers=TENANT)).status_code == 201
        assert (await client.post("/api/schedules", json=body, headers=TENANT)).status_code == 409

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"service": "meta", "cron_expression": "99 * * * *"},
        {"service": "meta", "cron_expression": "0 2 * * *", "timezone": "Atlantis/Capital"},
        {"service": "vine", "cron_expression": "0 2 * * *"},
    ])
    async def test_invalid_input(self, client, body):
        resp = await client.post("/api/schedules", json=body, headers=TENANT)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_tenant_header(self, client):
        resp = await client.get("/api/schedules")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_update_other_tenant_not_found(self, client):
        resp = await client.post("/api/schedules", json={"service": "meta", "cron_expression": "0 2 * * *"}, headers=TENANT)
        schedule_id = resp.json()["id"]

        update = {"cron_expression": "0 4 * * *", "enabled": True, "timezone": "UTC"}
        assert (await client.put(f"/api/schedules/{schedule_id}", json=update, headers=OTHER_TENANT)).status_code == 404

        resp = await client.put(f"/api/schedules/{schedule_id}", json=update, headers=TENANT)
        assert resp.status_code == 200
        assert resp.json()["cron_expression"] == "0 4 * * *"

    @pytest.mark.asyncio
    async def test_run_now_queues_job(self, client, runtime):
        resp = await client.post("/api/schedules/meta/run", json={"target_date": "2024-01-14"}, headers=TENANT)
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]

        job = await runtime.queue.get_job(job_id)
        assert job.target_date == "2024-01-14"

        resp = await client.get(f"/api/sync/jobs/{job_id}", headers=TENANT)
        assert resp.status_code == 200
        assert resp.json()["status"] == "waiting"
        assert (await client.get(f"/api/sync/jobs/{job_id}", headers=OTHER_TENANT)).status_code == 404

    @pytest.mark.asyncio
    async def test_run_now_bad_date(self, client):
        resp = await client.post("/api/schedules/meta/run", json={"target_date": "14/01/2024"}, headers=TENANT)
        assert resp.status_code == 422


class TestCredentials:

    @pytest.mark.asyncio
    async def test_save_list_verify_delete(self, client, fake_executor):
        resp = await client.post(
            "/api/credentials",
            json={"service": "meta", "label": "Ads", "secrets": {"access_token": "EAAB-secret"}},
            headers=TENANT,
        )
        assert resp.status_code == 201
        credential = resp.json()
        assert "secrets" not in credential
        assert "encrypted_payload" not in credential

        resp = await client.post(f"/api/credentials/{credential['id']}/verify", headers=TENANT)
        assert resp.json() == {"credential_id": credential["id"], "verified": True, "error": None}
        assert fake_executor.verified == [{"access_token": "EAAB-secret"}]

        listed = (await client.get("/api/credentials", headers=TENANT)).json()
        assert listed[0]["verified"] is True
        assert "EAAB-secret" not in str(listed)

        assert (await client.delete(f"/api/credentials/{credential['id']}", headers=OTHER_TENANT)).status_code == 404
        assert (await client.delete(f"/api/credentials/{credential['id']}", headers=TENANT)).status_code == 204
        assert (await client.get("/api/credentials", headers=TENANT)).json() == []

    @pytest.mark.asyncio
    async def test_failed_verification_is_redacted(self, client, fake_executor):
        fake_executor.verify_error = RuntimeError("401 Unauthorized for access_token=EAAB-secret")
        resp = await client.post(
            "/api/credentials",
            json={"service": "meta", "label": "Ads", "secrets": {"access_token": "EAAB-secret"}},
            headers=TENANT,
        )
        credential_id = resp.json()["id"]

        resp = await client.post(f"/api/credentials/{credential_id}/verify", headers=TENANT)
        data = resp.json()
        assert data["verified"] is False
        assert "EAAB-secret" not in data["error"]

    @pytest.mark.asyncio
    async def test_configure_service(self, client):
        resp = await client.post(
            "/api/credentials",
            json={"service": "meta", "label": "Ads", "secrets": {"access_token": "x"}},
            headers=TENANT,
        )
        credential_id = resp.json()["id"]

        resp = await client.put(
            "/api/services/meta",
            json={"credential_id": credential_id, "enabled": True, "spreadsheet_id": "sheet-9"},
            headers=TENANT,
        )
        assert resp.status_code == 200
        assert resp.json()["spreadsheet_id"] == "sheet-9"

        resp = await client.put("/api/services/meta", json={"credential_id": 999, "enabled": True}, headers=TENANT)
        assert resp.status_code == 404


class TestActivity:

    @pytest.mark.asyncio
    async def test_activity_is_tenant_scoped(self, client):
        await client.post(
            "/api/credentials",
            json={"service": "meta", "label": "Ads", "secrets": {"access_token": "x"}},
            headers=TENANT,
        )
        await client.post("/api/schedules/meta/run", headers=TENANT)

        resp = await client.get("/api/activity", headers=TENANT)
        actions = [entry["action"] for entry in resp.json()]
        assert actions == ["workflow_run", "credential_saved"]
        assert (await client.get("/api/activity", headers=OTHER_TENANT)).json() == []

        resp = await client.get("/api/activity", params={"action": "credential_saved"}, headers=TENANT)
        entry = resp.json()[0]
        assert entry["metadata"]["label"] == "Ads"

        summary = (await client.get("/api/activity/summary", headers=TENANT)).json()
        assert summary == {"tenant_id": 1, "total": 2, "by_action": {"credential_saved": 1, "workflow_run": 1}}


class TestQueue:

    @pytest.mark.asyncio
    async def test_stats_are_tenant_scoped(self, client):
        await client.post("/api/schedules/meta/run", headers=TENANT)
        resp = await client.get("/api/sync/queue", headers=TENANT)
        assert resp.json() == {"waiting": 1, "active": 0, "completed": 0, "failed": 0, "in_flight": [], "paused": False}

        resp = await client.get("/api/sync/queue", headers=OTHER_TENANT)
        assert resp.json()["waiting"] == 0

    @pytest.mark.asyncio
    async def test_stats_need_tenant(self, client):
        assert (await client.get("/api/sync/queue")).status_code == 422

    @pytest.mark.asyncio
    async def test_in_flight_hides_other_tenants(self, client, runtime):
        job_id = (await client.post("/api/schedules/meta/run", headers=OTHER_TENANT)).json()["job_id"]
        runtime.pool._in_flight[job_id] = await runtime.queue.get_job(job_id)

        assert (await client.get("/api/sync/queue", headers=TENANT)).json()["in_flight"] == []
        assert (await client.get("/api/sync/queue", headers=OTHER_TENANT)).json()["in_flight"] == [job_id]

    @pytest.mark.asyncio
    async def test_recent_jobs(self, client):
        first = (await client.post("/api/schedules/meta/run", headers=TENANT)).json()["job_id"]
        second = (await client.post("/api/schedules/ga4/run", headers=TENANT)).json()["job_id"]
        await client.post("/api/schedules/meta/run", headers=OTHER_TENANT)

        resp = await client.get("/api/sync/jobs", headers=TENANT)
        assert [job["id"] for job in resp.json()] == [second, first]

        resp = await client.get("/api/sync/jobs", params={"service": "meta", "limit": 5}, headers=TENANT)
        assert [job["id"] for job in resp.json()] == [first]

        assert (await client.get("/api/sync/jobs", params={"service": "orkut"}, headers=TENANT)).status_code == 422
        assert (await client.get("/api/sync/jobs", params={"limit": 0}, headers=TENANT)).status_code == 422

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, client, runtime):
        resp = await client.post("/api/sync/queue/pause", headers=TENANT)
        assert resp.json() == {"paused": True}
        await client.post("/api/schedules/meta/run", headers=TENANT)
        assert await runtime.queue.dequeue() is None
        assert (await client.get("/api/sync/queue", headers=TENANT)).json()["paused"] is True

        resp = await client.post("/api/sync/queue/resume", headers=TENANT)
        assert resp.json() == {"paused": False}
        assert await runtime.queue.dequeue() is not None

    @pytest.mark.asyncio
    async def test_clean(self, client):
        resp = await client.post("/api/sync/queue/clean", headers=TENANT)
        assert resp.status_code == 200
        assert resp.json() == {"completed": 0, "failed": 0}


class TestScheduleOverview:

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await client.post("/api/schedules", json={"service": "meta"}, headers=TENANT)
        await client.post("/api/schedules", json={"service": "ga4", "enabled": False}, headers=TENANT)
        await client.post("/api/schedules", json={"service": "meta"}, headers=OTHER_TENANT)

        resp = await client.get("/api/schedules/stats", headers=TENANT)
        assert resp.json() == {"total": 2, "enabled": 1, "by_service": {"meta": 1, "ga4": 1}, "timers": 0}

    @pytest.mark.asyncio
    async def test_run_all_queues_enabled_services(self, client, runtime):
        for service in ("shopify", "meta"):
            credential = await runtime.credentials.save_credential(1, service, service, {"access_token": "x"})
            await runtime.credentials.configure_service(1, service, credential.id, True)
        credential = await runtime.credentials.save_credential(1, "ga4", "ga4", {"access_token": "x"})
        await runtime.credentials.configure_service(1, "ga4", credential.id, False)

        resp = await client.post("/api/schedules/run-all", json={"target_date": "2024-01-14"}, headers=TENANT)
        assert resp.status_code == 202
        data = resp.json()
        assert list(data["jobs"]) == ["meta", "shopify"]
        assert data["stagger_seconds"] == 30.0

        job = await runtime.queue.get_job(data["jobs"]["shopify"])
        assert job.target_date == "2024-01-14"
        assert job.run_at > job.created_at

    @pytest.mark.asyncio
    async def test_run_all_bad_date(self, client):
        resp = await client.post("/api/schedules/run-all", json={"target_date": "yesterday"}, headers=TENANT)
        assert resp.status_code == 422
