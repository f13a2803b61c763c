"""Integration tests for the Mangaloom HTTP surface.

The service singletons are replaced with in-memory fakes so the routes run
against a real orchestrator without any provider credentials.
"""

import time
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

import api.dependencies as dependencies
from api.server import app, status_code_for
from services.errors import (
    NoContentError,
    NotFoundError,
    ProviderError,
    ProviderUnavailableError,
    ValidationError,
)
from services.tts_service import TTSService


@pytest.fixture
def tts_service():
    mock = Mock()
    mock.generate_page_audio = AsyncMock(return_value="https://cdn.test/tts/page.mp3")
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def client(monkeypatch, orchestrator, event_bus, repository, tts_service):
    monkeypatch.setattr(dependencies, "_event_bus", event_bus)
    monkeypatch.setattr(dependencies, "_repository", repository)
    monkeypatch.setattr(dependencies, "_orchestrator", orchestrator)
    monkeypatch.setattr(dependencies, "_tts_service", tts_service)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def planned(client, sample_seed_payload):
    """Plan an episode and return the full episode document."""
    response = client.post("/api/episodes", json=sample_seed_payload)
    assert response.status_code == 200
    episode_id = response.json()["episode_id"]
    return client.get(f"/api/episodes/{episode_id}").json()


def wait_for_pages(client, episode_id: str, statuses=("done", "failed"), timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        episode = client.get(f"/api/episodes/{episode_id}").json()
        if all(p["status"] in statuses for p in episode["pages"]):
            return episode
        if time.monotonic() > deadline:
            pytest.fail(f"pages still pending: {[p['status'] for p in episode['pages']]}")
        time.sleep(0.02)


@pytest.mark.integration
@pytest.mark.parametrize(
    "error,status_code",
    [
        (ValidationError("x"), 400),
        (NoContentError("x"), 400),
        (NotFoundError("x"), 404),
        (ProviderUnavailableError("x"), 503),
        (ProviderError("x"), 502),
    ],
)
def test_error_status_codes(error, status_code):
    assert status_code_for(error) == status_code


@pytest.mark.integration
def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Mangaloom API", "version": "1.0.0"}
    assert client.get("/api/health").json() == {"status": "healthy"}


@pytest.mark.integration
def test_plan_with_missing_fields_is_rejected(client):
    response = client.post("/api/episodes", json={"title": "T", "genre_tags": []})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing required seed fields: genre_tags, tone, setting, cast"


@pytest.mark.integration
def test_plan_rejects_nameless_cast(client, sample_seed_payload):
    sample_seed_payload["cast"] = [{"traits": "quiet"}]

    response = client.post("/api/episodes", json=sample_seed_payload)

    assert response.status_code == 400


@pytest.mark.integration
def test_plan_falls_back_without_planner(client, sample_seed_payload):
    response = client.post("/api/episodes", json=sample_seed_payload)

    assert response.status_code == 200
    body = response.json()
    assert len(body["outline"]["pages"]) == 10

    episode = client.get(f"/api/episodes/{body['episode_id']}").json()
    assert [p["page_number"] for p in episode["pages"]] == list(range(1, 11))
    assert all(p["status"] == "queued" for p in episode["pages"])
    assert episode["renderer_model"] == "fake-image-model"

    characters = client.get(f"/api/episodes/{body['episode_id']}/characters").json()["characters"]
    assert [c["asset_filename"] for c in characters] == ["a.png", "b.png", "mysterious_rival.png"]


@pytest.mark.integration
def test_unknown_episode_and_page(client):
    assert client.get("/api/episodes/nope").status_code == 404
    assert client.get("/api/pages/nope").status_code == 404
    assert client.get("/api/pages/nope/overlays").status_code == 404
    assert client.get("/api/episodes/nope/stream", params={"snapshot": "true"}).status_code == 404


@pytest.mark.integration
def test_generate_returns_immediately_and_completes(client, planned, fake_renderer):
    fake_renderer.fail_pages = {4: 3}

    response = client.post(f"/api/episodes/{planned['id']}/generate")

    assert response.status_code == 200
    assert response.json() == {"started": True}

    episode = wait_for_pages(client, planned["id"])
    statuses = {p["page_number"]: p["status"] for p in episode["pages"]}
    assert statuses[4] == "failed"
    assert all(s == "done" for n, s in statuses.items() if n != 4)
    assert episode["pages"][3]["error"] == "render failed on attempt 3"


@pytest.mark.integration
def test_generate_unknown_episode_still_starts(client, event_bus):
    response = client.post("/api/episodes/nope/generate")

    assert response.json() == {"started": True}
    deadline = time.monotonic() + 5
    while not event_bus.of_type("page_failed") and time.monotonic() < deadline:
        time.sleep(0.02)
    assert event_bus.of_type("page_failed")[0].page == 0


@pytest.mark.integration
def test_overlays_roundtrip(client, planned):
    page_id = planned["pages"][0]["id"]
    overlays = {"bubbles": [{"id": "b1", "x": 0.4, "text": "Hey!"}]}

    put = client.put(f"/api/pages/{page_id}/overlays", json={"overlays": overlays})
    get = client.get(f"/api/pages/{page_id}/overlays")

    assert put.json() == {"page_id": page_id, "overlays": overlays}
    assert get.json() == {"page_id": page_id, "overlays": overlays}


@pytest.mark.integration
def test_dialogue_comes_from_outline(client, planned):
    page = planned["pages"][0]

    dialogues = client.get(f"/api/pages/{page['id']}/dialogue").json()["dialogues"]

    assert dialogues == planned["outline"]["pages"][0]["dialogues"]


@pytest.mark.integration
def test_regenerate_and_retry(client, planned, fake_renderer):
    page_id = planned["pages"][1]["id"]

    regenerated = client.post(f"/api/pages/{page_id}/regenerate", json={"prompt": "add rain"})
    assert regenerated.status_code == 200
    assert regenerated.json()["page"]["status"] == "done"
    assert regenerated.json()["page"]["version"] == 1
    assert fake_renderer.page_requests[-1].edit_prompt == "add rain"

    retried = client.post(f"/api/pages/{page_id}/retry")
    assert retried.status_code == 200
    assert retried.json()["page"]["version"] == 2


@pytest.mark.integration
def test_regenerate_failure_is_bad_gateway(client, planned, fake_renderer):
    page_id = planned["pages"][0]["id"]
    fake_renderer.fail_pages = {1: 2}

    response = client.post(f"/api/pages/{page_id}/regenerate", json={"prompt": "darker"})

    assert response.status_code == 502
    assert response.json()["detail"] == "render failed on attempt 2"
    assert client.get(f"/api/pages/{page_id}").json()["status"] == "failed"


@pytest.mark.integration
def test_retry_failure_is_bad_gateway(client, planned, fake_renderer, event_bus):
    page_id = planned["pages"][0]["id"]
    fake_renderer.fail_pages = {1: 3}

    response = client.post(f"/api/pages/{page_id}/retry")

    assert response.status_code == 502
    assert response.json()["detail"] == "render failed on attempt 3"
    stored = client.get(f"/api/pages/{page_id}").json()
    assert stored["status"] == "failed"
    assert stored["error"] == "render failed on attempt 3"
    assert [e.page for e in event_bus.of_type("page_failed")] == [1]


@pytest.mark.integration
def test_regenerate_requires_prompt(client, planned):
    page_id = planned["pages"][0]["id"]

    assert client.post(f"/api/pages/{page_id}/regenerate", json={"prompt": ""}).status_code == 422


@pytest.mark.integration
def test_read_page(client, planned, tts_service):
    page_id = planned["pages"][0]["id"]

    response = client.post(f"/api/pages/{page_id}/read", json={"voice_id": "voice-9"})

    assert response.status_code == 200
    assert response.json()["audio_url"] == "https://cdn.test/tts/page.mp3"
    assert response.json()["dialogues"] == planned["outline"]["pages"][0]["dialogues"]
    assert tts_service.generate_page_audio.call_args.kwargs["voice_id"] == "voice-9"


@pytest.mark.integration
def test_read_page_without_dialogue(client, planned, tts_service):
    tts_service.generate_page_audio.side_effect = NoContentError("No dialogue to narrate")

    response = client.post(f"/api/pages/{planned['pages'][0]['id']}/read")

    assert response.status_code == 400


@pytest.mark.integration
def test_tts_catalogue_without_key(monkeypatch, client):
    monkeypatch.setattr(dependencies, "_tts_service", TTSService(api_key=None))

    assert client.get("/api/tts/voices").status_code == 503
    assert client.get("/api/tts/usage").status_code == 503


@pytest.mark.integration
def test_style_ref_upload(client, planned):
    episode_id = planned["id"]

    response = client.post(
        f"/api/episodes/{episode_id}/style-refs",
        files={"file": ("ref.jpg", b"\xff\xd8jpeg", "image/jpeg")},
    )

    assert response.status_code == 200
    url = response.json()["url"]
    assert url.startswith("https://placehold.co/512x512/")
    assert url.endswith(".jpg")
    assert client.get(f"/api/episodes/{episode_id}/style-refs").json() == {"refs": [url]}


@pytest.mark.integration
def test_empty_style_ref_upload(client, planned):
    response = client.post(
        f"/api/episodes/{planned['id']}/style-refs",
        files={"file": ("ref.png", b"", "image/png")},
    )

    assert response.status_code == 400


@pytest.mark.integration
def test_websocket_snapshot_and_keepalive(client, planned):
    with client.websocket_connect(f"/ws/episodes/{planned['id']}?snapshot=true") as websocket:
        snapshot = websocket.receive_json()
        websocket.send_text("ping")
        pong = websocket.receive_text()

    assert snapshot["type"] == "episode_snapshot"
    assert [p["page"] for p in snapshot["pages"]] == list(range(1, 11))
    assert snapshot["pages"][0] == {
        "page": 1,
        "status": "queued",
        "image_url": None,
        "seed": None,
        "version": 0,
        "error": None,
    }
    assert pong == "pong"


@pytest.mark.integration
def test_websocket_snapshot_unknown_episode(client):
    with client.websocket_connect("/ws/episodes/nope?snapshot=true") as websocket:
        assert websocket.receive_json() == {"type": "error", "message": "Episode not found"}
