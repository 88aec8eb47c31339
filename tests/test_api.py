import pytest

from conftest import FakeDriver, FakeSession, wait_for
from punch_relay import create_app
from punch_relay.services import AttendancePipeline


@pytest.fixture
def pipeline(config):
    config.sink_api_key = "secret"
    pipeline = AttendancePipeline(config, driver=FakeDriver(), session=FakeSession())
    yield pipeline
    pipeline.stop()
    pipeline.link.stop(wait_timeout=1)


@pytest.fixture
def client(pipeline, monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    app = create_app(pipeline=pipeline, start_services=False)
    app.config["TESTING"] = True
    return app.test_client()


def ingest(pipeline, subject_id, when):
    return pipeline.ingest({"user_id": subject_id, "timestamp": when}, "10.0.0.5")


def test_diagnostics(client):
    response = client.get("/diagnostics")

    assert response.status_code == 200
    data = response.get_json()
    assert data["link_state"] == "Disconnected"
    assert data["queue_length"] == 0
    assert data["concurrent_deliveries"] == 0
    assert "processed" in data["stats"]


def test_history_limit(client, pipeline):
    ingest(pipeline, "1", "2024-10-15 08:00:00")
    ingest(pipeline, "2", "2024-10-15 08:01:00")

    data = client.get("/history?limit=1").get_json()

    assert data["count"] == 1
    assert data["data"][0]["subject_id"] == "2"
    assert client.get("/history").get_json()["count"] == 2


def test_pause_and_resume(client, pipeline):
    assert client.post("/pipeline/pause").status_code == 200
    assert pipeline.pool.paused

    response = client.post("/pipeline/resume")

    assert response.status_code == 200
    assert response.get_json()["diagnostics"]["queue"]["paused"] is False


def test_clear_queue(client, pipeline):
    ingest(pipeline, "1", "2024-10-15 08:00:00")

    response = client.post("/queue/clear")

    assert response.get_json()["dropped"] == 1
    assert len(pipeline.queue) == 0


def test_get_config_redacts_secrets(client):
    data = client.get("/config").get_json()

    assert data["sink_api_key"] == "***"
    assert data["device_ip"] == "10.0.0.5"


def test_patch_config(client, pipeline):
    response = client.patch("/config", json={"max_concurrent": 2, "batch_size": "4"})

    assert response.status_code == 200
    assert response.get_json()["applied"] == {"max_concurrent": 2, "batch_size": 4}
    assert pipeline.pool.max_concurrent == 2


@pytest.mark.parametrize("body", [{"device_ip": "1.1.1.1"}, {"max_concurrent": 0}, {}])
def test_patch_config_rejects_bad_updates(client, pipeline, body):
    response = client.patch("/config", json=body)

    assert response.status_code == 400
    assert "error" in response.get_json()
    assert pipeline.pool.max_concurrent == 5


def test_patch_config_requires_json_object(client):
    response = client.patch("/config", data="nope", content_type="text/plain")
    assert response.status_code == 400


def test_poll_when_link_is_down(client):
    response = client.post("/device/poll")

    assert response.status_code == 200
    assert response.get_json()["skipped"] is True


def test_reinitialize_device(client, pipeline):
    response = client.post("/device/reinitialize")

    assert response.status_code == 200
    assert "link" in response.get_json()
    assert wait_for(lambda: pipeline.link.is_connected)


def test_live_events_starts_with_snapshot(client, pipeline):
    ingest(pipeline, "7", "2024-10-15 08:00:00")

    response = client.get("/live-events")
    assert response.mimetype == "text/event-stream"

    chunk = next(iter(response.response))
    if isinstance(chunk, bytes):
        chunk = chunk.decode()
    response.close()

    assert chunk.startswith("event: snapshot\ndata: ")
    assert '"subject_id": "7"' in chunk
    assert wait_for(lambda: pipeline.hub.subscriber_count == 0)
