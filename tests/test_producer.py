"""Tests for the model stream producer."""

import json

import pytest

from conftest import fake_openai
from appbuilder.generation.producer import ModelStreamProducer, build_messages, explanation_from


OUTPUT = [
    "<explanation>A small todo app</explanation>\n",
    '<file path="src/App.jsx">import Todo from "./components/Todo";\n',
    "export default function App() { return <Todo/> }</file>\n",
    '<file path="src/components/Todo.jsx">export default function Todo() { return null }</file>\n',
    "<package>uuid</package>",
]


async def _frames(producer, prompt="Build a todo app", **kwargs):
    out = []
    async for raw in producer.frames(prompt, **kwargs):
        assert raw.startswith("data: ") and raw.endswith("\n\n")
        out.append(json.loads(raw[len("data: "):]))
    return out


class TestModelStreamProducer:
    """Tests for ModelStreamProducer.frames."""

    @pytest.mark.asyncio
    async def test_frames_sequence(self, settings):
        client = fake_openai(OUTPUT, usage=(321, 654))
        frames = await _frames(ModelStreamProducer(settings, client))
        types = [f["type"] for f in frames]

        assert types[:2] == ["status", "status"]
        assert types.count("stream") == len(OUTPUT)
        assert types[-1] == "complete"
        assert {"type": "package", "name": "uuid", "message": "Installing uuid"} in frames
        component = next(f for f in frames if f["type"] == "component")
        assert component["name"] == "Todo"

        complete = frames[-1]
        assert complete["generatedCode"] == "".join(OUTPUT)
        assert complete["explanation"] == "A small todo app"
        assert complete["tokenUsage"] == {"promptTokens": 321, "completionTokens": 654}
        assert complete["packagesToInstall"] == ["uuid"]
        assert complete["files"] == 2
        assert complete["truncated"] is False

    @pytest.mark.asyncio
    async def test_stream_frames_are_raw_deltas(self, settings):
        frames = await _frames(ModelStreamProducer(settings, fake_openai(OUTPUT)))
        deltas = [f["text"] for f in frames if f["type"] == "stream"]

        assert deltas == OUTPUT
        assert all(f["raw"] for f in frames if f["type"] == "stream")
        assert frames[-1]["tokenUsage"] is None

    @pytest.mark.asyncio
    async def test_reasoning_becomes_thinking(self, settings):
        client = fake_openai(["<file path=\"a.js\">1</file>"], reasoning=["Let me", " plan"])
        frames = await _frames(ModelStreamProducer(settings, client))
        types = [f["type"] for f in frames]

        assert types.count("thinking") == 2
        assert types.index("thinking_complete") < types.index("stream")

    @pytest.mark.asyncio
    async def test_model_error_emits_error_frame(self, settings):
        client = fake_openai([], error=RuntimeError("gateway unavailable"))
        frames = await _frames(ModelStreamProducer(settings, client))

        assert frames[-1]["type"] == "error"
        assert "gateway unavailable" in frames[-1]["error"]

    @pytest.mark.asyncio
    async def test_request_uses_default_model_and_usage(self, settings):
        client = fake_openai(["hi"])
        await _frames(ModelStreamProducer(settings, client))
        call = client.chat.completions.calls[0]

        assert call["model"] == settings.default_model
        assert call["stream"] is True
        assert call["stream_options"] == {"include_usage": True}

    def test_edit_messages_include_context(self):
        messages = build_messages("Make it blue", True, {"src/App.jsx": "old"})

        assert len(messages) == 3
        assert '<file path="src/App.jsx">' in messages[1]["content"]
        assert messages[-1] == {"role": "user", "content": "Make it blue"}

    def test_explanation_fallback_strips_files(self):
        text = 'Here you go.\n<file path="a.js">code</file>\n<package>x</package> Enjoy!'
        assert explanation_from(text) == "Here you go. Enjoy!"
