import logging
import time
import traceback
import uuid
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from appbuilder.apply.preview import EventPreviewFrame, probe_url
from appbuilder.errors import CreditError, SessionBusyError
from appbuilder.generation.session import CancelToken
from appbuilder.services import Services, get_services
from appbuilder.sse import SSE_HEADERS, emit_event, sse_format


logger = logging.getLogger("appbuilder.api.generation")


router = APIRouter(prefix="/api/generations", tags=["generations"])


class GenerationRequest(BaseModel):
    """Payload to start a generation and get a run id for its event stream."""

    user_id: str
    prompt: str = Field(..., min_length=1)
    project_id: str = "default"
    model: str | None = None


class ResetRequest(BaseModel):
    project_id: str = "default"


def make_run_id() -> str:
    return f"run_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


@router.post("")
async def create_generation(
    request: GenerationRequest, services: Services = Depends(get_services)
) -> Any:
    if request.model and request.model not in services.settings.allowed_models:
        raise HTTPException(status_code=400, detail=f"Model not allowed: {request.model}")

    active = services.registry.active(request.project_id)
    if active is not None and active.busy:
        err = SessionBusyError(
            "A generation is already running for this project.",
            {"session_id": active.session_id},
        )
        return JSONResponse(status_code=409, content={"ok": False, "error": err.user_message()})

    try:
        estimate = await services.reconciler.check(request.user_id, request.prompt)
    except CreditError as e:
        return JSONResponse(
            status_code=402,
            content={
                "ok": False,
                "error": e.user_message(),
                "balance": e.balance,
                "required": e.required,
            },
        )

    run_id = make_run_id()
    logger.info(
        "create_generation[%s] project=%s model=%s prompt_len=%d",
        run_id,
        request.project_id,
        request.model,
        len(request.prompt),
    )
    await services.runs.set_run_payload(run_id, request.model_dump())
    return {"ok": True, "run_id": run_id, "estimate": estimate}


@router.get("/{run_id}/events")
async def generation_events(
    run_id: str, http_request: Request, services: Services = Depends(get_services)
):
    payload = await services.runs.get_run_payload(run_id)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}")

    cancel = CancelToken()
    services.cancel_tokens[run_id] = cancel

    def preview(base_url: str) -> EventPreviewFrame:
        return EventPreviewFrame(base_url, services.record_preview_event, probe=probe_url)

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            async for event in services.pipeline.run(
                payload["user_id"],
                payload["prompt"],
                project_id=payload.get("project_id") or "default",
                model=payload.get("model"),
                cancel=cancel,
                preview=preview,
            ):
                yield sse_format(event)
                if await http_request.is_disconnected():
                    cancel.cancel("client disconnected")
        except Exception as e:
            logger.error("generation_events[%s] error: %s", run_id, str(e))
            tb = traceback.format_exc(limit=10)
            yield sse_format(
                emit_event(run_id, "run_log", data=f"stream exception: {str(e)}\n{tb}")
            )
            yield sse_format(emit_event(run_id, "generation_failed", error=str(e)))
        finally:
            services.cancel_tokens.pop(run_id, None)

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)


@router.delete("/{run_id}")
async def cancel_generation(run_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    token = services.cancel_tokens.get(run_id)
    if token is None:
        return {"ok": False, "error": "run is not streaming"}
    token.cancel("cancelled by user")
    return {"ok": True, "cancelled": True}


@router.post("/reset")
async def reset_project(
    request: ResetRequest, services: Services = Depends(get_services)
) -> Any:
    try:
        services.registry.reset(request.project_id)
    except SessionBusyError as e:
        return JSONResponse(status_code=409, content={"ok": False, "error": e.message})
    services.mirror.targets.pop(request.project_id, None)
    return {"ok": True}
