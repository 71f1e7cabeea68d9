"""End-to-end tests for GenerationPipeline with fake collaborators."""

import asyncio

import pytest

from conftest import FakeBackend, FakeFrame, frame_bytes, no_sleep
from appbuilder.apply.orchestrator import ApplicationOrchestrator
from appbuilder.generation.pipeline import GenerationPipeline
from appbuilder.generation.session import CancelToken, SessionRegistry
from appbuilder.models import SessionStatus
from appbuilder.sandbox.backend import CommandResult
from appbuilder.sandbox.provisioner import SandboxManager
from appbuilder.sse import model_frame
from appbuilder.usage.ledger import InMemoryLedger
from appbuilder.usage.reconciler import UsageReconciler


TODO_FRAMES = [
    model_frame("status", message="Generating code..."),
    model_frame("stream", text='<file path="src/App.jsx">import axios from "axios";\n', raw=True),
    model_frame("stream", text="export default function App() { return null }</file>\n", raw=True),
    model_frame("stream", text='<file path="src/index.css">@tailwind base;</file>', raw=True),
    model_frame(
        "complete",
        generatedCode=(
            '<file path="src/App.jsx">import axios from "axios";\n'
            "export default function App() { return null }</file>\n"
            '<file path="src/index.css">@tailwind base;</file>'
        ),
        explanation="A todo app",
        tokenUsage={"promptTokens": 900, "completionTokens": 1100},
    ),
]


class Harness:
    def __init__(self, settings, balance=100_000, frames=TODO_FRAMES, backend=None):
        self.backend = backend or FakeBackend()
        self.ledger = InMemoryLedger({"u1": balance})
        self.registry = SessionRegistry()
        self.manager = SandboxManager(self.backend, settings, sleep=no_sleep)
        self.orchestrator = ApplicationOrchestrator(self.manager, settings, sleep=no_sleep)
        self.reconciler = UsageReconciler(self.ledger)
        self.frames = frames
        self.sources = 0
        self.pipeline = GenerationPipeline(
            self.registry, self.reconciler, self.manager, self.orchestrator, self.source
        )

    async def source(self, session, prior):
        self.sources += 1
        for chunk in frame_bytes(*self.frames):
            yield chunk

    async def run(self, prompt="Build a todo app", **kwargs):
        events = [e async for e in self.pipeline.run("u1", prompt, **kwargs)]
        return events, self.registry.active(kwargs.get("project_id", "default"))


def kinds(events):
    return [e["event_type"] for e in events]


class TestGenerationPipeline:
    """Tests for GenerationPipeline.run."""

    @pytest.mark.asyncio
    async def test_full_generation(self, settings):
        h = Harness(settings)
        events, session = await h.run()

        assert session.status is SessionStatus.COMPLETE
        assert kinds(events)[0] == "session_started"
        assert kinds(events)[-1] == "generation_complete"
        completed = [e["data"]["path"] for e in events if e["event_type"] == "file_completed"]
        assert completed == ["src/App.jsx", "src/index.css"]
        assert "packages_installed" in kinds(events)

        final = events[-1]["data"]
        assert final["credits_charged"] is True
        assert sorted(final["result"]["files_created"]) == ["src/App.jsx", "src/index.css"]
        assert final["result"]["packages_installed"] == ["axios"]
        assert await h.ledger.balance("u1") == 100_000 - 2000

    @pytest.mark.asyncio
    async def test_insufficient_credits_refused_before_sandbox(self, settings):
        h = Harness(settings, balance=500)
        events, session = await h.run()

        assert kinds(events) == ["session_started", "generation_failed"]
        assert "Insufficient credits" in events[-1]["error"]
        assert "No credits were charged." in events[-1]["error"]
        assert session.status is SessionStatus.IDLE
        assert h.backend.profiles == []
        assert h.sources == 0
        assert await h.ledger.entries("u1") == []
        assert await h.ledger.balance("u1") == 500

    @pytest.mark.asyncio
    async def test_provision_failure_returns_to_idle(self, settings):
        h = Harness(settings, backend=FakeBackend(fail_first=3))
        events, session = await h.run()

        assert kinds(events)[-1] == "generation_failed"
        assert "Try:" in events[-1]["error"]
        assert session.status is SessionStatus.IDLE
        assert h.sources == 0
        assert await h.ledger.entries("u1") == []

    @pytest.mark.asyncio
    async def test_stream_error_charges_nothing(self, settings):
        frames = [
            model_frame("stream", text='<file path="a.js">1</file>', raw=True),
            model_frame("error", error="upstream 500"),
        ]
        h = Harness(settings, frames=frames)
        events, session = await h.run()

        assert session.status is SessionStatus.FAILED
        assert "upstream 500" in events[-1]["error"]
        assert events[-1]["data"]["credits_charged"] is False
        assert await h.ledger.balance("u1") == 100_000

    @pytest.mark.asyncio
    async def test_stream_without_complete_fails(self, settings):
        frames = [model_frame("stream", text='<file path="a.js">1', raw=True)]
        h = Harness(settings, frames=frames)
        events, session = await h.run()

        assert session.status is SessionStatus.FAILED
        assert "ended before completion" in session.error

    @pytest.mark.asyncio
    async def test_malformed_frames_skipped(self, settings):
        frames = ["data: {broken\n"] + TODO_FRAMES
        h = Harness(settings, frames=frames)
        events, session = await h.run()

        assert session.status is SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_cancel_stops_at_event_boundary(self, settings):
        h = Harness(settings)
        token = CancelToken()
        seen = []
        async for event in h.pipeline.run("u1", "Build a todo app", cancel=token):
            seen.append(event)
            if event["event_type"] == "file_progress":
                token.cancel("client disconnected")

        session = h.registry.active("default")
        assert session.status is SessionStatus.FAILED
        assert "client disconnected" in session.error
        assert seen[-1]["data"]["credits_charged"] is False
        assert await h.ledger.balance("u1") == 100_000

    @pytest.mark.asyncio
    async def test_apply_failure_reports_charge(self, settings):
        h = Harness(settings)
        await h.manager.provision()
        session_box = h.backend.sessions[0]

        async def broken(files):
            raise RuntimeError("sandbox gone")

        session_box.write_files = broken
        events, session = await h.run()

        assert session.status is SessionStatus.FAILED
        final = events[-1]
        assert final["event_type"] == "generation_failed"
        assert final["data"]["credits_charged"] is True
        assert "partial state" in final["error"]
        assert "Credits were charged" in final["error"]

    @pytest.mark.asyncio
    async def test_second_prompt_is_edit(self, settings):
        h = Harness(settings)
        await h.run()
        events, session = await h.run("Make the header blue")

        assert events[0]["data"]["is_edit"] is True
        assert session.files["src/App.jsx"].edited is True
        assert events[-1]["data"]["result"]["files_updated"] == ["src/App.jsx", "src/index.css"]

    @pytest.mark.asyncio
    async def test_busy_project_rejected(self, settings):
        h = Harness(settings)
        h.registry.start("u1", "running").begin()

        events, _ = await h.run()

        assert kinds(events) == ["generation_rejected"]

    @pytest.mark.asyncio
    async def test_preview_factory_used(self, settings):
        h = Harness(settings)
        frames = []

        def preview(url):
            frame = FakeFrame()
            frames.append((url, frame))
            return frame

        await h.run(preview=preview)
        await h.orchestrator.drain()

        assert frames[0][0] == h.manager.handle.base_url
        assert len(frames[0][1].navigations) == 1

    @pytest.mark.asyncio
    async def test_package_failure_does_not_fail_generation(self, settings):
        h = Harness(settings)
        await h.manager.provision()
        h.backend.sessions[0].on("axios", CommandResult(stderr="E404", exit_code=1))

        events, session = await h.run()

        assert session.status is SessionStatus.COMPLETE
        result = events[-1]["data"]["result"]
        assert result["packages_failed"][0]["name"] == "axios"
        assert result["packages_installed"] == []

    @pytest.mark.asyncio
    async def test_early_close_leaves_nothing_pending(self, settings):
        h = Harness(settings)
        await h.manager.provision()
        blocked = asyncio.Event()

        async def stalled(files):
            await blocked.wait()

        h.backend.sessions[0].write_files = stalled
        before = asyncio.all_tasks()

        events = h.pipeline.run("u1", "Build a todo app")
        async for event in events:
            if event["event_type"] == "packages_detected":
                break
        await events.aclose()
        for _ in range(3):
            await asyncio.sleep(0)

        leftover = [t for t in asyncio.all_tasks() - before if not t.done()]
        assert leftover == []
        session = h.registry.active("default")
        assert session.status is SessionStatus.FAILED
        assert session.error == "Generation interrupted"
