"""Generation session state and the per-project session registry."""

import asyncio
import logging
import re
import time
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from appbuilder.errors import InvalidTransition, SessionBusyError
from appbuilder.models import (
    ApplicationResult,
    FileRecord,
    SessionStatus,
    StreamEvent,
    TokenUsage,
)
from appbuilder.stream.extractor import FileExtractor, extract_files, extract_packages


logger = logging.getLogger("appbuilder.generation.session")


TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.THINKING}),
    SessionStatus.THINKING: frozenset({SessionStatus.STREAMING, SessionStatus.FAILED}),
    SessionStatus.STREAMING: frozenset({SessionStatus.APPLYING, SessionStatus.FAILED}),
    SessionStatus.APPLYING: frozenset({SessionStatus.COMPLETE, SessionStatus.FAILED}),
    SessionStatus.COMPLETE: frozenset(),
    SessionStatus.FAILED: frozenset(),
}

BUSY_STATES = frozenset(
    {SessionStatus.THINKING, SessionStatus.STREAMING, SessionStatus.APPLYING}
)

_PACKAGE_TAGS = re.compile(r"<packages?>[^<]*</packages?>")
_CODE_MARKERS = ("<file", "import React", "export default", "className=")


def _conversation_text(text: str) -> str | None:
    """Strip package tags; drop text that looks like leaked code."""
    text = _PACKAGE_TAGS.sub("", text).strip()
    if not text or any(marker in text for marker in _CODE_MARKERS):
        return None
    return text


def _token_usage(raw: Any) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    prompt = raw.get("promptTokens")
    completion = raw.get("completionTokens")
    if not isinstance(prompt, int) or not isinstance(completion, int):
        logger.warning("ignoring malformed token usage: %r", raw)
        return None
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion)


class GenerationSession(BaseModel):
    """One prompt's journey from model stream to applied files.

    `raw_buffer` only ever grows. `files` holds this generation's files keyed
    by path in first-seen order; a later occurrence of a path replaces the
    record in place and marks it edited.
    """

    model_config = ConfigDict(protected_namespaces=())

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    project_id: str = "default"
    prompt: str
    model: str | None = None
    is_edit: bool = False
    prior_paths: set[str] = Field(default_factory=set)
    status: SessionStatus = SessionStatus.IDLE
    status_message: str = ""
    raw_buffer: str = ""
    files: dict[str, FileRecord] = Field(default_factory=dict)
    current_file: FileRecord | None = None
    thinking_text: str = ""
    thinking_duration: float | None = None
    conversation: list[str] = Field(default_factory=list)
    components: list[dict[str, Any]] = Field(default_factory=list)
    generated_code: str = ""
    explanation: str = ""
    queued_packages: list[str] = Field(default_factory=list)
    token_usage: TokenUsage | None = None
    estimated_tokens: int | None = None
    result: ApplicationResult | None = None
    error: str | None = None
    started_at: float = Field(default_factory=time.time)

    _extractor: FileExtractor = PrivateAttr(default_factory=FileExtractor)

    @property
    def produced_files(self) -> bool:
        return bool(self.files)

    @property
    def busy(self) -> bool:
        return self.status in BUSY_STATES

    def transition(self, target: SessionStatus) -> None:
        if target not in TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Cannot move session from {self.status.value} to {target.value}",
                {"session_id": self.session_id},
            )
        logger.debug("session %s: %s -> %s", self.session_id, self.status.value, target.value)
        self.status = target

    def begin(self) -> None:
        self.transition(SessionStatus.THINKING)
        self.status_message = "Thinking..."

    def fail(self, message: str) -> None:
        """Move to failed from any non-idle state; a no-op once terminal."""
        if self.status in (SessionStatus.FAILED, SessionStatus.COMPLETE):
            return
        self.transition(SessionStatus.FAILED)
        self.error = message
        self.current_file = None
        logger.info("session %s failed: %s", self.session_id, message)

    def _ensure_streaming(self) -> None:
        if self.status is SessionStatus.THINKING:
            self.transition(SessionStatus.STREAMING)
        elif self.status is not SessionStatus.STREAMING:
            raise InvalidTransition(
                f"Stream data received while {self.status.value}",
                {"session_id": self.session_id},
            )

    def queue_package(self, name: str) -> None:
        name = name.strip()
        if name and name not in self.queued_packages:
            self.queued_packages.append(name)

    def merge_file(self, record: FileRecord) -> FileRecord:
        if record.path in self.files or (self.is_edit and record.path in self.prior_paths):
            record.edited = True
        self.files[record.path] = record
        return record

    def handle_event(self, event: StreamEvent) -> list[FileRecord]:
        """Apply one decoded frame; returns files completed by it."""
        payload = event.payload
        kind = event.type

        if kind == "status":
            self.status_message = str(payload.get("message", ""))
        elif kind == "thinking":
            if self.status is not SessionStatus.THINKING:
                logger.debug("late thinking text ignored for %s", self.session_id)
            else:
                self.thinking_text += str(payload.get("text", ""))
        elif kind == "thinking_complete":
            duration = payload.get("duration")
            if isinstance(duration, (int, float)):
                self.thinking_duration = float(duration)
            self._ensure_streaming()
        elif kind == "conversation":
            text = _conversation_text(str(payload.get("text", "")))
            if text:
                self.conversation.append(text)
        elif kind == "stream":
            self._ensure_streaming()
            return self._append(str(payload.get("text", "")))
        elif kind == "component":
            self.components.append(
                {"name": payload.get("name"), "path": payload.get("path")}
            )
            self.status_message = f"Generated {payload.get('name')}"
        elif kind == "package":
            for name in payload.get("packages") or [payload.get("name") or ""]:
                self.queue_package(str(name))
            self.status_message = str(payload.get("message") or f"Installing {payload.get('name')}")
        elif kind == "complete":
            self._ensure_streaming()
            self._complete(payload)
        elif kind == "error":
            self.fail(str(payload.get("error") or payload.get("message") or "Generation failed"))
        return []

    def _append(self, text: str) -> list[FileRecord]:
        if not text:
            return []
        self.raw_buffer += text
        extracted = self._extractor.feed(self.raw_buffer)
        completed = [self.merge_file(rec) for rec in extracted.completed]
        partial = extracted.partial
        self.current_file = partial
        if completed and not self.is_edit:
            self.status_message = f"Completed {completed[-1].path}"
        if partial is not None and not self.is_edit:
            self.status_message = f"Generating {partial.path}"
        return completed

    def _complete(self, payload: dict[str, Any]) -> None:
        self.generated_code = str(payload.get("generatedCode") or "")
        self.explanation = str(payload.get("explanation") or "")
        self.token_usage = _token_usage(payload.get("tokenUsage"))
        for name in payload.get("packagesToInstall") or []:
            self.queue_package(str(name))
        for name in extract_packages(self.raw_buffer + self.generated_code):
            self.queue_package(name)
        self.current_file = None

        # Files only present in the completion text (nothing was streamed, or
        # the stream was cut) are merged over the streamed ones.
        if self.generated_code:
            batch = extract_files(self.generated_code, {})
            for rec in batch.completed:
                prev = self.files.get(rec.path)
                if prev is not None and prev.content == rec.content:
                    continue
                self.merge_file(rec)

        self.transition(SessionStatus.APPLYING)
        self.status_message = "Applying files..."

    def commit(self, result: ApplicationResult) -> None:
        """Record the orchestrator's result and finish the session."""
        self.result = result
        if result.success:
            self.transition(SessionStatus.COMPLETE)
            self.status_message = "Complete"
        else:
            self.fail("; ".join(result.errors) or "Application failed")


class CancelToken:
    """Cooperative cancellation checked between stream events."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class SessionRegistry:
    """Tracks the active session and the applied file set of each project.

    A project counts as an edit target once one of its generations applied
    successfully. Successful edits merge into the project's files; a new
    generation replaces them.
    """

    def __init__(self) -> None:
        self._active: dict[str, GenerationSession] = {}
        self._files: dict[str, dict[str, FileRecord]] = {}

    def active(self, project_id: str) -> GenerationSession | None:
        return self._active.get(project_id)

    def project_files(self, project_id: str) -> dict[str, FileRecord]:
        return dict(self._files.get(project_id, {}))

    def has_history(self, project_id: str) -> bool:
        return project_id in self._files

    def start(
        self,
        user_id: str,
        prompt: str,
        project_id: str = "default",
        model: str | None = None,
    ) -> GenerationSession:
        current = self._active.get(project_id)
        if current is not None and current.busy:
            raise SessionBusyError(
                "A generation is already running for this project. "
                "Wait for it to finish before sending another prompt.",
                {"session_id": current.session_id, "status": current.status.value},
            )
        prior = self._files.get(project_id, {})
        session = GenerationSession(
            user_id=user_id,
            project_id=project_id,
            prompt=prompt,
            model=model,
            is_edit=bool(prior),
            prior_paths=set(prior),
        )
        self._active[project_id] = session
        logger.info(
            "session %s started for project %s (edit=%s)",
            session.session_id,
            project_id,
            session.is_edit,
        )
        return session

    def finish(self, session: GenerationSession) -> None:
        result = session.result
        if session.status is SessionStatus.COMPLETE and result is not None and result.success:
            applied = set(result.files_applied)
            files = {p: f for p, f in session.files.items() if p in applied}
            if session.is_edit:
                merged = dict(self._files.get(session.project_id, {}))
                merged.update(files)
                self._files[session.project_id] = merged
            else:
                self._files[session.project_id] = files

    def reset(self, project_id: str = "default") -> None:
        """Discard the project's session and history; the next prompt starts fresh."""
        current = self._active.get(project_id)
        if current is not None and current.busy:
            raise SessionBusyError(
                "Cannot reset while a generation is running.",
                {"session_id": current.session_id},
            )
        self._active.pop(project_id, None)
        self._files.pop(project_id, None)
