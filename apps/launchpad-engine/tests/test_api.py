"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from launchpad_engine.core.config import settings
from launchpad_engine.core.jobs import JobManager
from launchpad_engine.main import app
from launchpad_engine.services.build_log import log_path_for
from launchpad_engine.services.pipeline import PipelineExecutor

from conftest import FakeExecutor


@pytest.fixture
def client(tmp_path):
    JobManager._instance = JobManager(
        pipeline=PipelineExecutor(settings, executor=FakeExecutor(), keychain_dir=tmp_path),
    )
    with TestClient(app) as test_client:
        yield test_client
    JobManager._instance = None


class TestJobsAPI:
    """Tests for /v1/jobs."""

    def test_unknown_job_status_is_404(self, client):
        response = client.get("/v1/jobs/unknown-job-id-0000")
        assert response.status_code == 404

    def test_unknown_job_logs_is_404(self, client):
        response = client.get("/v1/jobs/unknown-job-id-0000/logs")
        assert response.status_code == 404

    def test_create_job(self, client, tmp_path):
        response = client.post("/v1/jobs/ios", json={
            "projectPath": str(tmp_path),
            "version": "1.0.0",
            "buildNumber": "3",
        })
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        job_id = body["data"]["jobId"]

        status = client.get(f"/v1/jobs/{job_id}").json()["data"]
        assert status["jobId"] == job_id
        assert status["status"] in ("queued", "building", "failed")

    def test_create_job_requires_version(self, client, tmp_path):
        response = client.post("/v1/jobs/ios", json={"projectPath": str(tmp_path), "buildNumber": "3"})
        assert response.status_code == 422

    def test_logs_are_plain_text(self, client):
        path = log_path_for("logged-job-0001", settings.LOGS_DIR)
        path.write_text("=== LaunchPad Build Log: logged-job-0001 ===\n", encoding="utf-8")

        response = client.get("/v1/jobs/logged-job-0001/logs")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "LaunchPad Build Log" in response.text

    def test_queue_stats(self, client):
        response = client.get("/v1/jobs/stats")
        assert response.status_code == 200
        assert set(response.json()["data"]) == {"waiting", "active", "completed", "failed"}


class TestSystemAPI:
    """Tests for health, capabilities and auth."""

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["services"]["workers"] is True

    def test_capabilities(self, client):
        data = client.get("/v1/capabilities").json()
        assert set(data["tools"]) == {"rsync", "npx", "pod", "fastlane", "xcrun", "security"}
        assert data["upload"]["backend"] == settings.UPLOAD_BACKEND
        assert data["storage"]["buildDir"] == str(settings.BUILD_DIR)

    def test_api_key_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "s3cret")

        assert client.get("/v1/jobs/stats").status_code == 401
        assert client.get("/v1/jobs/stats", headers={"x-api-key": "wrong"}).status_code == 401
        assert client.get("/v1/jobs/stats", headers={"x-api-key": "s3cret"}).status_code == 200
        assert client.get("/health").status_code == 200
