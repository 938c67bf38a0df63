"""
Tests for the HTTP API

Tests for printpulse/pipeline/routes.py and printpulse/main.py
"""

import pytest
from fastapi.testclient import TestClient

from printpulse.credentials import KeyFileCredentials
from printpulse.errors import QuotaOrBillingError
from printpulse.main import create_app
from printpulse.pipeline.models import Stage

from conftest import VIDEO_BYTES, VIDEO_URI


@pytest.fixture
def key_file(tmp_path) -> KeyFileCredentials:
    return KeyFileCredentials(tmp_path / "credentials.json")


@pytest.fixture
def client(service, key_file):
    app = create_app(service=service, key_file=key_file, api_secret="")
    with TestClient(app) as test_client:
        yield test_client


def walk_to_mockups(client):
    client.post("/project/discover", json={"query": "cat lovers", "style_id": "minimalist"})
    client.post("/project/select-trend", json={"index": 0})
    client.post("/project/design", json={"aspect_ratio": "1:1", "resolution": "1K"})
    client.post("/project/listing/draft")
    client.post("/project/listing/complete", json={})


class TestProjectFlow:
    """Tests for the stage endpoints."""

    def test_initial_state(self, client):
        """Test GET /project returns a fresh project with six idle stages."""
        body = client.get("/project").json()

        assert body["project"]["current_stage"] == 0
        assert len(body["stages"]) == 6
        assert all(s["status"] == "IDLE" for s in body["stages"])

    def test_styles(self, client):
        """Test the style catalog endpoint."""
        body = client.get("/project/styles").json()

        assert [s["id"] for s in body] == ["retro", "minimalist", "personalization", "humor"]

    def test_full_flow(self, client, fake_client):
        """Test the whole pipeline over HTTP, with background mockups and video."""
        trends = client.post("/project/discover", json={"query": "cat lovers", "style_id": "minimalist"}).json()
        assert trends[0]["title"] == "Cozy Cabin Cat"
        assert trends[0]["style"]["id"] == "minimalist"

        assert client.post("/project/select-trend", json={"index": 0}).json()["current_stage"] == 1

        design = client.post("/project/design", json={}).json()
        assert design["locator"].startswith("data:image/png;base64,")

        draft = client.post("/project/listing/draft").json()
        assert len(draft["tags"]) == 13
        refined = client.post("/project/listing/refine-title").json()
        assert refined["title"].startswith("Catchy ")
        assert client.post("/project/listing/complete", json={}).json()["current_stage"] == 3

        fake_client.failing_mockups = {1}
        started = client.post("/project/mockups")
        assert started.status_code == 202
        assert started.json()["total"] == 3

        progress = client.get("/project/mockups/progress").json()
        assert progress["done"] is True
        assert progress["succeeded"] == 2
        assert progress["failures"][0]["index"] == 1
        assert client.post("/project/mockups/complete").json()["current_stage"] == 4

        assert client.post("/project/video", json={}).status_code == 202
        video = client.get("/project/video/status").json()
        assert video["status"] == "SUCCEEDED"
        assert video["video_uri"] == VIDEO_URI

        receipt = client.post("/project/publish").json()
        state = client.get("/project").json()
        assert state["project"]["published"] is True
        assert receipt["project_id"] == state["project"]["epoch"]
        assert "key=" not in state["project"]["video_asset"]

        download = client.get("/project/video/file")
        assert download.status_code == 200
        assert download.content == VIDEO_BYTES
        assert download.headers["content-type"] == "video/mp4"

    def test_restart(self, client):
        """Test restart returns a fresh project with a new epoch."""
        epoch = client.get("/project").json()["project"]["epoch"]
        client.post("/project/discover", json={"query": "cats"})
        client.post("/project/select-trend", json={"index": 0})

        fresh = client.post("/project/restart").json()

        assert fresh["epoch"] != epoch
        assert fresh["current_stage"] == 0
        assert fresh["selected_trend"] is None


class TestErrorMapping:
    """Tests for error kind → HTTP status."""

    def test_out_of_order_is_409(self, client):
        """Test a stage called too early is a conflict."""
        response = client.post("/project/design", json={})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "StageOrder"

    def test_unknown_style_is_404(self, client):
        """Test an unknown style id is not found."""
        assert client.post("/project/discover", json={"style_id": "baroque"}).status_code == 404

    def test_quota_is_402(self, client, fake_client):
        """Test quota errors pass through with their message."""
        fake_client.errors["discover_trends"] = QuotaOrBillingError("Billing account is disabled")

        response = client.post("/project/discover", json={"query": "cats"})

        assert response.status_code == 402
        assert response.json()["detail"]["message"] == "Billing account is disabled"

    def test_mockups_at_wrong_stage(self, client):
        """Test the background batch is refused up front at the wrong stage."""
        assert client.post("/project/mockups").status_code == 409

    def test_progress_before_start(self, client):
        """Test progress is 404 before any batch."""
        assert client.get("/project/mockups/progress").status_code == 404
        assert client.get("/project/video/status").status_code == 404
        assert client.get("/project/video/file").status_code == 404

    def test_reference_image_without_payload_is_422(self, client, fake_client):
        """Test a data URL with nothing after the header fails validation."""
        client.post("/project/discover", json={"query": "cats"})
        client.post("/project/select-trend", json={"index": 0})

        response = client.post("/project/design", json={"reference_image": "data:image/png;base64"})

        assert response.status_code == 422
        assert "synthesize_design_image" not in fake_client.calls

    def test_reference_image_data_url_accepted(self, client):
        """Test a well-formed data URL reference goes through."""
        client.post("/project/discover", json={"query": "cats"})
        client.post("/project/select-trend", json={"index": 0})

        response = client.post("/project/design", json={"reference_image": "data:image/png;base64,QUJD"})

        assert response.status_code == 200

    def test_second_start_while_reserved(self, client, service):
        """Test a batch that is queued but not yet running already makes the stage busy."""
        walk_to_mockups(client)
        service.reserve(Stage.MOCKUPS)

        response = client.post("/project/mockups")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "StageBusy"

    def test_failed_background_video(self, client, fake_client):
        """Test a failed video job is visible through the status endpoint."""
        walk_to_mockups(client)
        client.post("/project/mockups")
        client.post("/project/mockups/complete")
        fake_client.pending_polls = 0
        fake_client.video_error = "Video generation failed"

        client.post("/project/video", json={})

        video = client.get("/project/video/status").json()
        assert video["status"] == "FAILED"
        assert video["error"] == "Video generation failed"
        stages = client.get("/project").json()["stages"]
        assert stages[4]["status"] == "FAILED"
        assert stages[4]["error_kind"] == "NoArtifactProduced"


class TestSettings:
    """Tests for the API key settings endpoints."""

    def test_save_and_clear_key(self, client, key_file):
        """Test PUT saves the key and DELETE removes it."""
        assert client.get("/settings/api-key").json()["saved_key"] is False

        assert client.put("/settings/api-key", json={"api_key": "AIza-test"}).status_code == 200
        assert key_file.resolve() == "AIza-test"
        assert client.get("/settings/api-key").json()["saved_key"] is True

        client.delete("/settings/api-key")
        assert key_file.resolve() is None

    def test_empty_key_rejected(self, client):
        """Test an empty key fails validation."""
        assert client.put("/settings/api-key", json={"api_key": ""}).status_code == 422


class TestAppEndpoints:
    """Tests for health, metrics, and the shared secret."""

    def test_health(self, client):
        """Test health reports key configuration and the current stage."""
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["gemini_api_key_set"] is True
        assert body["current_stage"] == "Discover"

    def test_metrics(self, client):
        """Test metrics include stage counters after a run."""
        client.post("/project/discover", json={"query": "cats"})

        body = client.get("/metrics").json()

        assert body["counters"]["stage.discover.succeeded"] == 1
        assert body["pipeline"]["stages"]["discover"]["success_rate"] == 1.0
        assert body["pipeline"]["generation_calls"] == {}
        assert "uptime_seconds" in body

    def test_secret_required(self, service, key_file):
        """Test a configured secret guards the API but not /health."""
        app = create_app(service=service, key_file=key_file, api_secret="s3cret")
        with TestClient(app) as client:
            assert client.get("/project").status_code == 401
            assert client.get("/project", headers={"X-PrintPulse-Secret": "s3cret"}).status_code == 200
            assert client.get("/health").status_code == 200
