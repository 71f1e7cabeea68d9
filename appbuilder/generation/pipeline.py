import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import aclosing
from typing import Any

from appbuilder.apply.orchestrator import ApplicationOrchestrator
from appbuilder.apply.preview import PreviewFrame
from appbuilder.errors import (
    AppBuilderError,
    ApplicationError,
    CreditError,
    InvalidTransition,
    ProvisionError,
    SessionBusyError,
    TransportError,
)
from appbuilder.generation.session import (
    CancelToken,
    GenerationSession,
    SessionRegistry,
)
from appbuilder.models import ApplicationResult, FileRecord, SessionStatus
from appbuilder.sandbox.provisioner import SandboxManager
from appbuilder.sse import emit_event
from appbuilder.stream.decoder import StreamDecoder
from appbuilder.usage.reconciler import UsageReconciler


logger = logging.getLogger("appbuilder.generation.pipeline")


FrameSource = Callable[[GenerationSession, dict[str, FileRecord]], AsyncIterable[bytes]]
PreviewFactory = Callable[[str], PreviewFrame]

# Frames surfaced to the client as-is, besides completed files.
_RELAYED = frozenset({"status", "thinking", "thinking_complete", "conversation", "component", "package"})


class GenerationPipeline:
    """Runs one prompt end to end and yields progress events.

    Order: busy check, credit pre-flight, sandbox, model stream, apply,
    credit deduction. Failures before the model stream leave the session
    idle and charge nothing.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        reconciler: UsageReconciler,
        manager: SandboxManager,
        orchestrator: ApplicationOrchestrator,
        source: FrameSource,
    ):
        self.registry = registry
        self.reconciler = reconciler
        self.manager = manager
        self.orchestrator = orchestrator
        self.source = source

    async def run(
        self,
        user_id: str,
        prompt: str,
        *,
        project_id: str = "default",
        model: str | None = None,
        cancel: CancelToken | None = None,
        preview: PreviewFactory | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        try:
            session = self.registry.start(user_id, prompt, project_id=project_id, model=model)
        except SessionBusyError as e:
            yield emit_event("", "generation_rejected", error=e.user_message())
            return

        sid = session.session_id
        yield emit_event(
            sid,
            "session_started",
            {"session_id": sid, "project_id": project_id, "is_edit": session.is_edit},
        )

        try:
            async with aclosing(self._run_session(session, cancel, preview)) as events:
                async for event in events:
                    yield event
        finally:
            if session.busy:
                session.fail("Generation interrupted")
            self.registry.finish(session)

    async def _run_session(
        self,
        session: GenerationSession,
        cancel: CancelToken | None,
        preview: PreviewFactory | None,
    ) -> AsyncIterator[dict[str, Any]]:
        sid = session.session_id

        # Early phase: nothing has been spent yet and the session stays idle.
        try:
            session.estimated_tokens = await self.reconciler.check(session.user_id, session.prompt)
            yield emit_event(sid, "credits_checked", {"estimate": session.estimated_tokens})
            handle, _ = await self.manager.require()
            yield emit_event(
                sid, "sandbox_ready", {"sandbox_id": handle.sandbox_id, "url": handle.base_url}
            )
        except (CreditError, ProvisionError) as e:
            logger.info("session %s aborted before generation: %s", sid, e.message)
            yield self._failed(session, e)
            return

        session.begin()
        yield emit_event(sid, "status", {"status": session.status.value, "message": session.status_message})

        async for event in self._consume(session, cancel):
            yield event
        if session.status is SessionStatus.FAILED:
            yield self._failed(session, TransportError(session.error or "Generation failed"))
            return

        result = ApplicationResult()
        if session.files:
            frame = preview(handle.base_url) if preview is not None else None
            async with aclosing(self._apply(session, frame)) as events:
                async for event in events:
                    if isinstance(event, ApplicationResult):
                        result = event
                    else:
                        yield event

        charged = False
        try:
            entry = await self.reconciler.reconcile(session)
            charged = entry.deducted > 0
            yield emit_event(
                sid,
                "credits_reconciled",
                {
                    "deducted": entry.deducted,
                    "actual_tokens": entry.actual_tokens,
                    "estimated_tokens": entry.estimated_tokens,
                    "balance": entry.balance_after,
                },
            )
        except Exception as e:
            logger.exception("credit reconciliation failed for session %s", sid)
            yield emit_event(sid, "credits_failed", error=str(e))

        session.commit(result)
        if session.status is SessionStatus.COMPLETE:
            yield emit_event(
                sid,
                "generation_complete",
                {
                    "result": result.model_dump(),
                    "explanation": session.explanation,
                    "credits_charged": charged,
                },
            )
        else:
            err = ApplicationError(session.error or "Application failed")
            err.credits_charged = charged
            yield self._failed(session, err, result)

    async def _consume(
        self, session: GenerationSession, cancel: CancelToken | None
    ) -> AsyncIterator[dict[str, Any]]:
        sid = session.session_id
        decoder = StreamDecoder()
        prior = self.registry.project_files(session.project_id)
        try:
            async for event in decoder.decode(self.source(session, prior)):
                if cancel is not None and cancel.cancelled:
                    session.fail(f"Generation cancelled: {cancel.reason}")
                    break
                completed = session.handle_event(event)
                for rec in completed:
                    yield emit_event(
                        sid,
                        "file_completed",
                        {"path": rec.path, "type": rec.type.value, "edited": rec.edited},
                    )
                if event.type == "stream" and session.current_file is not None:
                    yield emit_event(
                        sid,
                        "file_progress",
                        {"path": session.current_file.path, "chars": len(session.current_file.content)},
                    )
                elif event.type in _RELAYED:
                    yield emit_event(sid, event.type, event.payload)
                if session.status in (SessionStatus.APPLYING, SessionStatus.FAILED):
                    break
        except InvalidTransition as e:
            logger.warning("session %s: %s", sid, e.message)
            session.fail(e.message)
        except Exception as e:
            logger.exception("stream consumption failed for session %s", sid)
            session.fail(f"Generation stream failed: {e}")

        if session.status in (SessionStatus.THINKING, SessionStatus.STREAMING):
            session.fail("The generation stream ended before completion")
        if decoder.anomalies:
            logger.warning("session %s skipped %d malformed frames", sid, decoder.anomalies)

    async def _apply(
        self, session: GenerationSession, frame: PreviewFrame | None
    ) -> AsyncIterator[dict[str, Any] | ApplicationResult]:
        sid = session.session_id
        queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        task = asyncio.create_task(
            self.orchestrator.apply(
                list(session.files.values()),
                session.is_edit,
                project_id=session.project_id,
                prompt=session.prompt,
                queued_packages=session.queued_packages,
                frame=frame,
                on_progress=lambda kind, data: queue.put_nowait((kind, data)),
            )
        )
        getter: asyncio.Future | None = None
        try:
            while not task.done() or not queue.empty():
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    kind, data = getter.result()
                    yield emit_event(sid, kind, data)
                else:
                    getter.cancel()
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not task.done():
                task.cancel()

        try:
            yield task.result()
        except AppBuilderError as e:
            logger.error("apply failed for session %s: %s", sid, e)
            yield ApplicationResult(success=False, errors=[e.message])
        except Exception as e:
            logger.exception("apply crashed for session %s", sid)
            yield ApplicationResult(success=False, errors=[f"Failed to apply files: {e}"])

    def _failed(
        self,
        session: GenerationSession,
        err: AppBuilderError,
        result: ApplicationResult | None = None,
    ) -> dict[str, Any]:
        return emit_event(
            session.session_id,
            "generation_failed",
            {
                "status": session.status.value,
                "credits_charged": err.credits_charged,
                "result": result.model_dump() if result is not None else None,
            },
            error=err.user_message(),
        )
