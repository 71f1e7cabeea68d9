import logging
import re
import time
from collections.abc import AsyncIterator

from openai import AsyncOpenAI

from appbuilder.config import Settings
from appbuilder.models import FileRecord
from appbuilder.sse import model_frame
from appbuilder.stream.extractor import OPEN_TAG, extract_files, extract_packages


logger = logging.getLogger("appbuilder.generation.producer")


SYSTEM_PROMPT = """You are an expert React developer building apps inside a Vite + Tailwind sandbox.

Output every file you create or change as:
<file path="src/components/Example.jsx">
...full file content...
</file>

Rules:
- Always write complete files, never fragments or diffs.
- The entry component is src/App.jsx; styles use Tailwind classes and src/index.css.
- Declare npm packages you import with <package>name</package> (react, react-dom and vite are already installed).
- Put a short summary of what you built in <explanation>...</explanation>.
"""

EDIT_INSTRUCTIONS = """This is an edit of an existing app. Only output the files that must change,
and keep everything else as it is. Current files follow."""

_EXPLANATION = re.compile(r"<explanation>([\s\S]*?)</explanation>")
_FILE_BLOCK = re.compile(r'<file path="[^"]+">[\s\S]*?(?:</file>|$)')
_TAGS = re.compile(r"<packages?>[^<]*</packages?>")


def explanation_from(text: str) -> str:
    """Prefer an explicit <explanation> block, else the prose outside file tags."""
    m = _EXPLANATION.search(text)
    if m:
        return m.group(1).strip()
    prose = _TAGS.sub("", _FILE_BLOCK.sub("", text))
    return " ".join(prose.split())


def build_messages(
    prompt: str, is_edit: bool, context: dict[str, str] | None = None
) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    if is_edit and context:
        blocks = "\n".join(
            f'<file path="{path}">\n{content}\n</file>' for path, content in context.items()
        )
        messages.append({"role": "system", "content": f"{EDIT_INSTRUCTIONS}\n{blocks}"})
    messages.append({"role": "user", "content": prompt})
    return messages


def _component_name(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    return name.split(".", 1)[0]


class ModelStreamProducer:
    """Calls the model and re-emits its output as typed event-stream frames.

    Content deltas become `stream` frames verbatim; reasoning deltas, when the
    gateway provides them, become `thinking` frames. A `complete` frame with
    the full text and reported token usage closes the stream.
    """

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.model_api_key, base_url=self.settings.model_base_url
            )
        return self._client

    async def frames(
        self,
        prompt: str,
        *,
        model: str | None = None,
        is_edit: bool = False,
        context: dict[str, str] | None = None,
    ) -> AsyncIterator[str]:
        model = model or self.settings.default_model
        yield model_frame("status", message="Initializing AI...")

        parts: list[str] = []
        usage = None
        thinking_started: float | None = None
        thinking_done = False
        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=build_messages(prompt, is_edit, context),
                stream=True,
                stream_options={"include_usage": True},
            )
            yield model_frame("status", message="Generating code...")
            async for chunk in stream:
                if getattr(chunk, "usage", None) is not None:
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                reasoning = getattr(delta, "reasoning_content", None) or getattr(
                    delta, "reasoning", None
                )
                if reasoning and not thinking_done:
                    if thinking_started is None:
                        thinking_started = time.monotonic()
                    yield model_frame("thinking", text=reasoning)
                    continue
                content = delta.content
                if not content:
                    continue
                if thinking_started is not None and not thinking_done:
                    thinking_done = True
                    duration = round(time.monotonic() - thinking_started, 1)
                    yield model_frame("thinking_complete", duration=duration)
                parts.append(content)
                yield model_frame("stream", text=content, raw=True)
        except Exception as e:
            logger.exception("model stream failed (model=%s)", model)
            yield model_frame("error", error=f"Model stream failed: {e}")
            return

        text = "".join(parts)
        packages = extract_packages(text)
        for name in packages:
            yield model_frame("package", name=name, message=f"Installing {name}")

        files = extract_files(text, {}).completed
        components = [f for f in files if "/components/" in f.path]
        for index, rec in enumerate(components):
            yield model_frame("component", name=_component_name(rec.path), path=rec.path, index=index)

        explanation = explanation_from(text)
        if explanation:
            yield model_frame("conversation", text=explanation)

        token_usage = None
        if usage is not None:
            token_usage = {
                "promptTokens": int(usage.prompt_tokens),
                "completionTokens": int(usage.completion_tokens),
            }
        logger.info(
            "model stream finished model=%s chars=%d files=%d usage=%s",
            model,
            len(text),
            len(files),
            token_usage,
        )
        yield model_frame(
            "complete",
            generatedCode=text,
            explanation=explanation,
            tokenUsage=token_usage,
            packagesToInstall=packages,
            files=len(files),
            truncated=text.count("</file>") < len(OPEN_TAG.findall(text)),
        )

    async def stream_bytes(self, session, prior_files: dict[str, FileRecord]) -> AsyncIterator[bytes]:
        """Frame source for the pipeline: the session's prompt, encoded frames."""
        context = {path: rec.content for path, rec in prior_files.items()}
        async for frame in self.frames(
            session.prompt, model=session.model, is_edit=session.is_edit, context=context
        ):
            yield frame.encode("utf-8")
