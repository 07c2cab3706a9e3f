"""
Tests for the render API endpoints.

These tests verify:
- Health and version endpoints
- Error responses carry code and message
- Starting, inspecting and cancelling render jobs

The render itself is replaced with a mock; end-to-end renders are covered
in test_pipeline.py.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from captionburn.main import app


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def client():
    """FastAPI test client with lifespan events."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def source_file(temp_output_dir):
    path = temp_output_dir / "source.mp4"
    path.write_bytes(b"\x00")
    return path


# =============================================================================
# Tests
# =============================================================================


class TestHealth:
    """Tests for service metadata endpoints."""

    def test_health(self, client):
        """GET /health reports healthy."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_version(self, client):
        """GET /api/version reports the app version."""
        response = client.get("/api/version")

        assert response.status_code == 200
        assert "version" in response.json()


class TestRenderErrors:
    """Tests for error responses."""

    def test_unknown_job(self, client):
        """GET on an unknown job returns 404 with an error code."""
        response = client.get("/api/renders/does-not-exist")

        assert response.status_code == 404
        assert response.json()["code"] == "RENDER_JOB_NOT_FOUND"

    def test_cancel_unknown_job(self, client):
        """DELETE on an unknown job returns 404."""
        response = client.delete("/api/renders/does-not-exist")

        assert response.status_code == 404

    def test_missing_video(self, client, temp_output_dir):
        """POST with a missing source video returns 400 INVALID_INPUT."""
        response = client.post(
            "/api/renders",
            json={"videoPath": str(temp_output_dir / "missing.mp4"), "outputPath": str(temp_output_dir / "out.mp4")},
        )

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "INVALID_INPUT"
        assert "missing.mp4" in data["detail"]

    def test_request_validation(self, client):
        """POST without outputPath returns 422 VALIDATION_ERROR."""
        response = client.post("/api/renders", json={"videoPath": "/in.mp4"})

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestRenderJobs:
    """Tests for the render job lifecycle through the API."""

    def test_start_get_cancel(self, client, source_file, temp_output_dir):
        """POST starts a job, GET returns it, DELETE cancels it."""
        with patch("captionburn.services.render_jobs.render_video_with_captions", new=AsyncMock()) as render:
            response = client.post(
                "/api/renders",
                json={
                    "videoPath": str(source_file),
                    "outputPath": str(temp_output_dir / "out.mp4"),
                    "captions": [{"id": "a", "startTime": 0, "endTime": 1000, "text": "hi"}],
                },
            )

            assert response.status_code == 201
            job_id = response.json()["id"]

            status_response = client.get(f"/api/renders/{job_id}")
            assert status_response.status_code == 200
            assert status_response.json()["id"] == job_id

            listed = client.get("/api/renders").json()
            assert job_id in [job["id"] for job in listed]

            cancel_response = client.delete(f"/api/renders/{job_id}")
            assert cancel_response.status_code == 204
            assert client.get(f"/api/renders/{job_id}").json()["status"] == "cancelled"

        render.assert_awaited_once()
        assert render.call_args.args[0] == str(source_file)

    def test_progress_socket_sends_snapshot(self, client, source_file, temp_output_dir):
        """The websocket sends the job's current state on connect."""
        with patch("captionburn.services.render_jobs.render_video_with_captions", new=AsyncMock()):
            job_id = client.post(
                "/api/renders",
                json={"videoPath": str(source_file), "outputPath": str(temp_output_dir / "out.mp4")},
            ).json()["id"]

            with client.websocket_connect(f"/api/renders/{job_id}/ws") as websocket:
                message = websocket.receive_json()

        assert message["type"] == "progress"
        assert message["job_id"] == job_id

    def test_progress_socket_unknown_job(self, client):
        """The websocket refuses jobs that do not exist."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/renders/does-not-exist/ws"):
                pass

        assert exc_info.value.code == status.WS_1008_POLICY_VIOLATION
