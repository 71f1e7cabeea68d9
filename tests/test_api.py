"""HTTP tests for the FastAPI app with fake sandbox and model collaborators."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeBackend, fake_openai, no_sleep
from appbuilder.app import create_app
from appbuilder.generation.producer import ModelStreamProducer
from appbuilder.mirror import MirrorService
from appbuilder.run_store import InMemoryRunStore
from appbuilder.services import build_services
from appbuilder.usage.ledger import InMemoryLedger


APP_OUTPUT = [
    "<explanation>A todo app</explanation>\n",
    '<file path="src/App.jsx">export default function App() {\n',
    "  return <h1>Todos</h1>\n}</file>\n",
    '<file path="src/index.css">@tailwind base;</file>',
]


async def _unreachable(url, timeout=8.0):
    return None


@pytest.fixture
def services(settings, monkeypatch):
    monkeypatch.setattr("appbuilder.api.generation.probe_url", _unreachable)
    producer = ModelStreamProducer(settings, client=fake_openai(APP_OUTPUT, usage=(700, 800)))
    return build_services(
        settings,
        backend=FakeBackend(),
        ledger=InMemoryLedger({"u1": 50_000, "poor": 10}),
        runs=InMemoryRunStore(),
        producer=producer,
        mirror=MirrorService(None),
        sleep=no_sleep,
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def parse_sse(text):
    events = []
    for block in text.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events


class TestCredits:
    """Tests for the credits endpoints."""

    def test_estimate(self, client):
        resp = client.post("/api/credits/estimate", json={"prompt": "Build a complete app"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["output_estimate"] == 4000
        assert body["estimate"] >= 1000

    def test_balance_and_top_up(self, client):
        assert client.get("/api/credits/u1").json()["balance"] == 50_000

        resp = client.post("/api/credits/u1/top-up", json={"amount": 500})
        assert resp.json() == {"ok": True, "user_id": "u1", "balance": 50_500}

        entries = client.get("/api/credits/u1").json()["entries"]
        assert entries[-1]["operation"] == "top_up"

    def test_top_up_rejects_non_positive(self, client):
        assert client.post("/api/credits/u1/top-up", json={"amount": 0}).status_code == 422


class TestGenerations:
    """Tests for creating and streaming generations."""

    def test_low_balance_refused(self, client):
        resp = client.post("/api/generations", json={"user_id": "poor", "prompt": "Build a todo app"})

        assert resp.status_code == 402
        body = resp.json()
        assert body["balance"] == 10
        assert "No credits were charged." in body["error"]

    def test_disallowed_model(self, client):
        resp = client.post(
            "/api/generations",
            json={"user_id": "u1", "prompt": "Build a todo app", "model": "acme/unknown"},
        )
        assert resp.status_code == 400

    def test_unknown_run(self, client):
        assert client.get("/api/generations/run_missing/events").status_code == 404

    def test_run_streams_to_completion(self, client, services):
        resp = client.post("/api/generations", json={"user_id": "u1", "prompt": "Build a todo app"})
        assert resp.status_code == 200
        run_id = resp.json()["run_id"]

        stream = client.get(f"/api/generations/{run_id}/events")
        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(stream.text)
        kinds = [e["event_type"] for e in events]

        assert kinds[0] == "session_started"
        assert "sandbox_ready" in kinds
        assert kinds[-1] == "generation_complete"
        final = events[-1]["data"]
        assert final["credits_charged"] is True
        assert sorted(final["result"]["files_created"]) == ["src/App.jsx", "src/index.css"]
        assert client.get("/api/credits/u1").json()["balance"] == 50_000 - 1500

        status = client.get("/api/sandbox").json()
        assert status["active"] is True
        assert "src/App.jsx" in status["applied_files"]

    def test_cancel_without_stream(self, client):
        assert client.delete("/api/generations/run_missing").json()["ok"] is False

    def test_reset(self, client):
        assert client.post("/api/generations/reset", json={}).json() == {"ok": True}


class TestSandbox:
    """Tests for the sandbox endpoints."""

    def test_lifecycle(self, client, monkeypatch):
        async def ok(url, timeout=8.0):
            return 200

        monkeypatch.setattr("appbuilder.api.sandbox.probe_url", ok)

        assert client.get("/api/sandbox").json()["active"] is False
        assert client.post("/api/sandbox/check-preview").json()["ok"] is False

        created = client.post("/api/sandbox").json()
        assert created["ok"] is True
        assert created["sandbox"]["sandbox_id"] == "sbx-1"

        preview = client.post("/api/sandbox/check-preview").json()
        assert preview == {
            "ok": True,
            "running": True,
            "status": 200,
            "url": created["sandbox"]["base_url"],
        }

        assert client.get("/api/sandbox/files").json()["ok"] is True
        assert client.delete("/api/sandbox").json() == {"ok": True, "killed": True}
        assert client.get("/api/sandbox/files").json()["ok"] is False

    def test_provision_failure(self, settings):
        services = build_services(
            settings,
            backend=FakeBackend(fail_first=10),
            ledger=InMemoryLedger(),
            runs=InMemoryRunStore(),
            producer=ModelStreamProducer(settings, client=fake_openai([])),
            mirror=MirrorService(None),
            sleep=no_sleep,
        )
        with TestClient(create_app(services)) as client:
            resp = client.post("/api/sandbox")

        assert resp.status_code == 503
        assert resp.json()["attempts"] == 3
        assert resp.json()["suggestions"]


class TestRawStream:
    def test_stream_frames(self, client):
        resp = client.post("/api/generate/stream", json={"prompt": "Build a todo app"})
        frames = parse_sse(resp.text)

        assert frames[0] == {"type": "status", "message": "Initializing AI..."}
        assert frames[-1]["type"] == "complete"
        assert frames[-1]["files"] == 2

    def test_models_without_key(self, client, services):
        assert client.get("/api/models").json() == {"models": services.settings.allowed_models}

    def test_root(self, client):
        assert client.get("/").json() == {"Hello": "App Builder"}
