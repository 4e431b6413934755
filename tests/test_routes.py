"""Tests for API routes."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backends import PresetLibrary
from conftest import FakeBackend, RecordingStore
from server.models import GridRunRequest
from services.grid_service import GridGenService
from services.grid_store import GridStore


@pytest.fixture
def store(temp_dir):
    return GridStore(temp_dir / "saved", temp_dir / "grids")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(store, backend, fast_settings):
    """Create test client with services backed by temp directories."""
    import server.app as app_module
    import server.routes as routes_module

    service = GridGenService(backend, store, persistence=RecordingStore(),
                             presets=PresetLibrary(), settings=fast_settings)
    previous = (app_module.grid_service, app_module.grid_store)
    app_module.init_services(service, store)

    # Fresh app without the lifespan so no real backend is started
    app = FastAPI()
    app.include_router(routes_module.router)

    with TestClient(app) as client:
        yield client

    app_module.init_services(*previous)


def sse_events(response):
    return [json.loads(line[len("data:"):].strip())
            for line in response.text.splitlines() if line.startswith("data:")]


class TestRunEndpoint:
    """Tests for /api/grid/run."""

    def test_streams_events(self, client, backend):
        response = client.post("/api/grid/run", json={
            "base_params": {"prompt": "a cat"},
            "axes": [{"mode": "seed", "vals": "1, 2"}],
        })
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = sse_events(response)
        assert events[0]["status"]["stage"] == "starting"
        assert events[-1] == {"success": "complete"}
        assert len([e for e in events if "image" in e]) == 3
        assert backend.tags == ["1", "2"]

    def test_invalid_request(self, client):
        response = client.post("/api/grid/run", json={"output_type": "poster"})
        assert response.status_code == 422

    def test_invalid_max_simul(self, client):
        response = client.post("/api/grid/run", json={"max_simul": 0})
        assert response.status_code == 422


class TestRunStream:
    """Tests for the SSE event relay."""

    @pytest.mark.asyncio
    async def test_early_close_ends_run(self, store, fast_settings):
        import server.app  # noqa: F401  (routes imports the app module)
        from server.routes import stream_run_events

        backend = FakeBackend(threaded=True, delay=0.2)
        service = GridGenService(backend, store, persistence=RecordingStore(),
                                 presets=PresetLibrary(), settings=fast_settings)
        request = GridRunRequest(base_params={"prompt": "a cat"},
                                 axes=[{"mode": "seed", "vals": "1, 2, 3, 4, 5"}], max_simul=1)

        stream = stream_run_events(service, request, "run42")
        first = await stream.__anext__()
        assert first["event"] == "grid"
        assert json.loads(first["data"])["status"]["run_id"] == "run42"
        await stream.__anext__()
        assert service.active_runs() == ["run42"]

        await stream.aclose()

        assert service.active_runs() == []
        backend.join()
        assert len(backend.submitted) < 5


class TestCancelEndpoint:
    """Tests for cancellation endpoints."""

    def test_cancel_unknown_run(self, client):
        response = client.post("/api/grid/unknown/cancel")
        assert response.status_code == 404
        assert "no active grid run" in response.json()["detail"].lower()

    def test_active_runs_empty(self, client):
        response = client.get("/api/grid/active")
        assert response.status_code == 200
        assert response.json() == {"runs": []}


class TestExistsEndpoint:
    """Tests for /api/grid/exists."""

    def test_missing_folder(self, client):
        response = client.get("/api/grid/exists", params={"folder": "run1"})
        assert response.json() == {"folder": "run1", "exists": False}

    def test_existing_folder(self, client, store):
        run_dir = store.run_dir("local", "run1")
        run_dir.mkdir(parents=True)
        (run_dir / "index.html").write_text("<html></html>")
        response = client.get("/api/grid/exists", params={"folder": "run1"})
        assert response.json()["exists"] is True

    def test_empty_folder_name(self, client):
        response = client.get("/api/grid/exists", params={"folder": "  "})
        assert response.status_code == 400


class TestSavedGridEndpoints:
    """Tests for /api/grids."""

    def test_save_get_list_delete(self, client):
        response = client.put("/api/grids/portraits", json={"data": {"axes": ["seed"]}})
        assert response.status_code == 200
        assert response.json()["success"] is True

        assert client.get("/api/grids/portraits").json() == {"axes": ["seed"]}
        assert client.get("/api/grids").json() == {"data": ["portraits"], "history": []}

        assert client.delete("/api/grids/portraits").status_code == 200
        assert client.get("/api/grids/portraits").status_code == 404

    def test_public_grid_visible_to_others(self, client):
        client.put("/api/grids/shared", params={"user_id": "alice"}, json={"data": {"a": 1}, "is_public": True})
        response = client.get("/api/grids/shared", params={"user_id": "bob"})
        assert response.json() == {"a": 1}

    def test_get_missing(self, client):
        response = client.get("/api/grids/nothing")
        assert response.status_code == 404

    def test_delete_history_entry(self, client, store):
        run_dir = store.run_dir("local", "run1")
        run_dir.mkdir(parents=True)
        (run_dir / "saved_config.json").write_text("{}")
        assert client.get("/api/grids").json()["history"] == ["run1"]

        assert client.delete("/api/grids/history/run1").status_code == 200
        assert client.get("/api/grids").json()["history"] == []

    def test_invalid_name(self, client):
        response = client.put("/api/grids/...", json={"data": {}})
        assert response.status_code == 400

    def test_unsafe_user_id_is_rejected(self, client, store, temp_dir):
        escaped = store.saved_dir / ".." / ".." / "outside" / "evil.json"

        response = client.put("/api/grids/evil", params={"user_id": "../../outside"},
                              json={"data": {"pwned": True}})
        assert response.status_code == 400
        assert not escaped.resolve().exists()

        assert client.get("/api/grids/evil", params={"user_id": "../x"}).status_code == 400
        assert client.get("/api/grids", params={"user_id": "../x"}).status_code == 400
        assert client.delete("/api/grids/history/run1", params={"user_id": ".."}).status_code == 400
        assert client.get("/api/grid/exists", params={"folder": "run", "user_id": "../x"}).status_code == 400
