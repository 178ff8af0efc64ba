"""Unit tests for the sandbox lifecycle API routes.

The app is built with ``create_app`` around a registry backed by in-memory
units, so no child processes or containers are started.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from appforge.api.main import create_app
from appforge.sandbox.models import SandboxState
from tests.conftest import make_bundle
from tests.mocks import wait_for_status


@pytest.fixture
def app(test_settings, registry):
    return create_app(test_settings, registry=registry)


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


def _execute_body(app_id: str = "app-1", **overrides) -> dict:
    body = {"app_id": app_id, "files": make_bundle(), "dependencies": {"react": "^18.2.0"}}
    body.update(overrides)
    return body


# =============================================================================
# POST /execute
# =============================================================================


class TestExecute:
    """Tests for POST /api/v1/execute."""

    async def test_accepted(self, client):
        response = await client.post("/api/v1/execute", json=_execute_body())

        assert response.status_code == 201
        data = response.json()
        assert data["app_id"] == "app-1"
        assert data["status"] in ("starting", "running")
        assert data["endpoint"] == "http://localhost:9100"

    async def test_wait_returns_running_with_logs(self, client):
        response = await client.post("/api/v1/execute", json=_execute_body(wait=True))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "running"
        assert "Compiled successfully" in data["logs"]

    async def test_policy_violation_is_422_with_every_violation(self, client, workspace_root):
        files = make_bundle(**{"index.js": "eval(input)"})
        response = await client.post(
            "/api/v1/execute",
            json=_execute_body(files=files, dependencies={"child_process": "1.0.0"}),
            headers={"X-Correlation-ID": "cid-123"},
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == 422
        assert error["correlation_id"] == "cid-123"
        assert response.headers["X-Correlation-ID"] == "cid-123"
        rules = {v["rule"] for v in error["violations"]}
        assert rules == {"dependency", "content"}
        assert not (workspace_root / "app-1").exists()

    async def test_invalid_app_id_is_400(self, client):
        response = await client.post("/api/v1/execute", json=_execute_body(app_id="../escape"))

        assert response.status_code == 400
        assert "invalid sandbox id" in response.json()["error"]["message"]

    async def test_conflict_is_409(self, client):
        await client.post("/api/v1/execute", json=_execute_body(wait=True))

        response = await client.post("/api/v1/execute", json=_execute_body())

        assert response.status_code == 409
        assert "redeploy" in response.json()["error"]["message"]

    async def test_redeploy(self, client, fake_units):
        await client.post("/api/v1/execute", json=_execute_body(wait=True))

        response = await client.post("/api/v1/execute", json=_execute_body(redeploy=True))

        assert response.status_code == 201
        assert fake_units.units["app-1"][0].stop_calls == 1

    async def test_custom_resources(self, client):
        body = _execute_body(resources={"memory_mb": 256, "cpu_limit": 1.0, "timeout_seconds": 60})
        await client.post("/api/v1/execute", json=body)

        response = await client.get("/api/v1/apps/app-1")

        assert response.json()["limits"]["memory_mb"] == 256

    async def test_malformed_body(self, client):
        response = await client.post("/api/v1/execute", json={"app_id": "app-1"})
        assert response.status_code == 422


# =============================================================================
# GET /apps, GET /apps/{id}
# =============================================================================


class TestStatus:
    """Tests for status and listing."""

    async def test_status(self, client, registry):
        await client.post("/api/v1/execute", json=_execute_body())
        await wait_for_status(registry, "app-1", SandboxState.RUNNING)

        response = await client.get("/api/v1/apps/app-1")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["isolation"] == "process"
        assert data["port"] == 9100

    async def test_unknown_is_404(self, client):
        response = await client.get("/api/v1/apps/missing")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["type"] == "http_error"
        assert "X-Correlation-ID" in response.headers

    async def test_list(self, client):
        await client.post("/api/v1/execute", json=_execute_body("app-a"))
        await client.post("/api/v1/execute", json=_execute_body("app-b"))

        response = await client.get("/api/v1/apps")

        data = response.json()
        assert data["total"] == 2
        assert [a["app_id"] for a in data["apps"]] == ["app-a", "app-b"]

    async def test_error_state_reported(self, client, registry, fake_units):
        fake_units.script.install_fails = True
        await client.post("/api/v1/execute", json=_execute_body())
        await wait_for_status(registry, "app-1", SandboxState.ERROR)

        data = (await client.get("/api/v1/apps/app-1")).json()

        assert data["status"] == "error"
        assert "Install step failed" in data["reason"]


# =============================================================================
# PATCH /apps/{id}
# =============================================================================


class TestUpdate:
    """Tests for hot updates."""

    async def test_update(self, client, registry, workspace_root):
        await client.post("/api/v1/execute", json=_execute_body(wait=True))

        response = await client.patch(
            "/api/v1/apps/app-1", json={"files": {"index.js": "console.log('v2')"}}
        )

        assert response.status_code == 200
        assert response.json()["files_written"] == 1
        assert response.json()["restart_required"] is False
        assert (workspace_root / "app-1" / "index.js").read_text() == "console.log('v2')"

    async def test_container_update_requires_redeploy(self, client):
        await client.post("/api/v1/execute", json=_execute_body(isolation="container", wait=True))

        response = await client.patch(
            "/api/v1/apps/app-1", json={"files": {"index.js": "console.log('v2')"}}
        )

        assert response.status_code == 200
        assert response.json()["restart_required"] is True

    async def test_update_unknown_is_404(self, client, workspace_root):
        response = await client.patch(
            "/api/v1/apps/missing-id", json={"files": {"index.js": "x"}}
        )

        assert response.status_code == 404
        assert not (workspace_root / "missing-id").exists()

    async def test_update_violation_is_422(self, client):
        await client.post("/api/v1/execute", json=_execute_body(wait=True))

        response = await client.patch(
            "/api/v1/apps/app-1", json={"files": {"index.js": "document.write(x)"}}
        )

        assert response.status_code == 422

    async def test_empty_update_rejected(self, client):
        response = await client.patch("/api/v1/apps/app-1", json={"files": {}})
        assert response.status_code == 422


# =============================================================================
# DELETE /apps/{id}
# =============================================================================


class TestStop:
    """Tests for DELETE /api/v1/apps/{id}."""

    async def test_stop_is_idempotent(self, client, workspace_root):
        await client.post("/api/v1/execute", json=_execute_body(wait=True))

        first = await client.delete("/api/v1/apps/app-1")
        second = await client.delete("/api/v1/apps/app-1")

        assert first.status_code == 204
        assert second.status_code == 204
        assert (await client.get("/api/v1/apps/app-1")).status_code == 404
        assert not (workspace_root / "app-1").exists()


# =============================================================================
# GET /apps/{id}/logs
# =============================================================================


class TestLogs:
    """Tests for GET /api/v1/apps/{id}/logs."""

    async def test_tail(self, client):
        await client.post("/api/v1/execute", json=_execute_body(wait=True))

        response = await client.get("/api/v1/apps/app-1/logs", params={"tail": 2})

        assert response.status_code == 200
        assert response.json()["logs"].splitlines() == ["Starting app...", "Compiled successfully"]

    async def test_negative_tail_rejected(self, client):
        await client.post("/api/v1/execute", json=_execute_body(wait=True))
        response = await client.get("/api/v1/apps/app-1/logs", params={"tail": -1})
        assert response.status_code == 422

    async def test_unknown_is_404(self, client):
        response = await client.get("/api/v1/apps/missing/logs")
        assert response.status_code == 404
