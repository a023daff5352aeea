"""
API tests for the /v1/jobs endpoints.
"""

import uuid
from collections.abc import AsyncGenerator

import pytest
from conftest import build_settings
from httpx import ASGITransport, AsyncClient

from jobrelay.config.settings import AuthMode, get_settings
from jobrelay.main import create_app
from jobrelay.v1.jobs.runtime import JobRuntime

ALICE = {"X-User-ID": "alice"}
BOB = {"X-User-ID": "bob"}
ADMIN = {"X-User-ID": "ops", "X-Roles": "admin"}


async def create_job(client: AsyncClient, body: dict, headers=ALICE) -> dict:
    response = await client.post("/v1/jobs", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestCreateJob:
    async def test_create_job(self, client):
        response = await client.post(
            "/v1/jobs",
            json={"type": "email:send", "payload": {"to": "a@example.com"}},
            headers=ALICE,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["ok"] is True
        assert body["request_id"] == response.headers["X-Request-ID"]

        job = body["data"]
        assert job["type"] == "email:send"
        assert job["status"] == "pending"
        assert job["payload"] == {"to": "a@example.com"}
        assert job["attempts"] == 0
        assert job["max_attempts"] == 3
        assert job["result"] is None
        uuid.UUID(job["id"])

    async def test_invalid_type(self, client):
        response = await client.post(
            "/v1/jobs", json={"type": "sms:send", "payload": {}}, headers=ALICE
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_TYPE"
        assert "email:send" in error["details"]["valid_types"]

    async def test_idempotency_key_camel_case(self, client):
        first = await create_job(
            client, {"type": "email:send", "payload": {"v": 1}, "idempotencyKey": "k-1"}
        )
        second = await create_job(
            client, {"type": "email:send", "payload": {"v": 2}, "idempotencyKey": "k-1"}
        )

        assert second["id"] == first["id"]
        assert second["payload"] == {"v": 1}

    async def test_max_attempts(self, client):
        job = await create_job(client, {"type": "data:export", "maxAttempts": 5})
        assert job["max_attempts"] == 5

        response = await client.post(
            "/v1/jobs", json={"type": "data:export", "max_attempts": 0}, headers=ALICE
        )
        assert response.status_code == 422

    async def test_missing_user_header(self, client):
        response = await client.post("/v1/jobs", json={"type": "email:send"})

        assert response.status_code == 400
        assert "X-User-ID" in response.json()["error"]["message"]


class TestGetJob:
    async def test_get_own_job(self, client):
        created = await create_job(client, {"type": "file:process", "payload": {}})

        response = await client.get(f"/v1/jobs/{created['id']}", headers=ALICE)

        assert response.status_code == 200
        assert response.json()["data"]["id"] == created["id"]

    async def test_other_users_job_is_not_found(self, client):
        created = await create_job(client, {"type": "file:process"})

        response = await client.get(f"/v1/jobs/{created['id']}", headers=BOB)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_admin_sees_any_job(self, client):
        created = await create_job(client, {"type": "file:process"})

        response = await client.get(f"/v1/jobs/{created['id']}", headers=ADMIN)
        assert response.status_code == 200

    async def test_unknown_job(self, client):
        response = await client.get(f"/v1/jobs/{uuid.uuid4()}", headers=ALICE)
        assert response.status_code == 404

    async def test_malformed_id(self, client):
        response = await client.get("/v1/jobs/not-a-uuid", headers=ALICE)
        assert response.status_code == 422


class TestListJobs:
    async def test_list_own_jobs(self, client):
        for i in range(3):
            await create_job(client, {"type": "email:send", "payload": {"i": i}})
        await create_job(client, {"type": "email:send"}, headers=BOB)

        response = await client.get("/v1/jobs?limit=2", headers=ALICE)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 3
        assert data["limit"] == 2
        assert data["offset"] == 0
        assert len(data["jobs"]) == 2

    async def test_list_filters(self, client):
        await create_job(client, {"type": "email:send"})
        export = await create_job(client, {"type": "data:export"})
        await client.post(f"/v1/jobs/{export['id']}/cancel", headers=ALICE)

        response = await client.get("/v1/jobs?status=cancelled", headers=ALICE)
        jobs = response.json()["data"]["jobs"]
        assert [job["id"] for job in jobs] == [export["id"]]

        response = await client.get("/v1/jobs?type=email:send", headers=ALICE)
        assert response.json()["data"]["total"] == 1

    async def test_list_rejects_bad_limit(self, client):
        response = await client.get("/v1/jobs?limit=500", headers=ALICE)
        assert response.status_code == 422

    async def test_list_rejects_unknown_status(self, client):
        response = await client.get("/v1/jobs?status=sleeping", headers=ALICE)
        assert response.status_code == 422


class TestCancelJob:
    async def test_cancel(self, client):
        created = await create_job(client, {"type": "workspace:backup"})

        response = await client.post(f"/v1/jobs/{created['id']}/cancel", headers=ALICE)
        assert response.status_code == 200
        assert response.json()["data"] == {"success": True}

        again = await client.post(f"/v1/jobs/{created['id']}/cancel", headers=ALICE)
        assert again.json()["data"] == {"success": False}

        job = await client.get(f"/v1/jobs/{created['id']}", headers=ALICE)
        assert job.json()["data"]["status"] == "cancelled"

    async def test_cancel_unknown_job(self, client):
        response = await client.post(f"/v1/jobs/{uuid.uuid4()}/cancel", headers=ALICE)
        assert response.status_code == 404

    async def test_cancel_other_users_job(self, client):
        created = await create_job(client, {"type": "workspace:backup"})

        response = await client.post(f"/v1/jobs/{created['id']}/cancel", headers=BOB)
        assert response.status_code == 404


class TestStats:
    async def test_stats_scoped_to_caller(self, client):
        await create_job(client, {"type": "email:send"})
        await create_job(client, {"type": "email:send"}, headers=BOB)

        response = await client.get("/v1/jobs/stats/overview", headers=ALICE)
        data = response.json()["data"]
        assert data["total_jobs"] == 1
        assert data["by_status"]["pending"] == 1
        assert data["queues"]["email:send"]["waiting"] == 2

        response = await client.get("/v1/jobs/stats/overview", headers=ADMIN)
        assert response.json()["data"]["total_jobs"] == 2


class TestGatewayAuth:
    @pytest.fixture
    async def production_client(self, tmp_path) -> AsyncGenerator[AsyncClient, None]:
        settings = build_settings(
            tmp_path, environment="production", auth_mode=AuthMode.OIDC
        )
        runtime = await JobRuntime.create(settings)
        app = create_app(settings, runtime=runtime)
        app.dependency_overrides[get_settings] = lambda: settings

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as ac:
            yield ac
        await runtime.close()

    async def test_forwarded_identity_is_served(self, production_client):
        created = await create_job(
            production_client, {"type": "email:send"}, headers=ALICE
        )

        response = await production_client.get(
            f"/v1/jobs/{created['id']}", headers=ALICE
        )
        assert response.status_code == 200
        assert response.json()["data"]["id"] == created["id"]

        other = await production_client.get(f"/v1/jobs/{created['id']}", headers=BOB)
        assert other.status_code == 404

    async def test_missing_identity_is_unauthenticated(self, production_client):
        response = await production_client.post(
            "/v1/jobs", json={"type": "email:send", "payload": {}}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"
