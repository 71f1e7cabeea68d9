import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from appbuilder.services import Services, get_services
from appbuilder.sse import SSE_HEADERS, model_frame


logger = logging.getLogger("appbuilder.api.stream")


router = APIRouter(prefix="/api/generate", tags=["generate"])


class StreamRequest(BaseModel):
    """Payload for a raw model frame stream, without sandbox or credits."""

    prompt: str = Field(..., min_length=1)
    model: str | None = None
    is_edit: bool = False
    context: dict[str, str] = Field(default_factory=dict)


@router.post("/stream")
async def generate_stream(request: StreamRequest, services: Services = Depends(get_services)):
    if request.model and request.model not in services.settings.allowed_models:
        raise HTTPException(status_code=400, detail=f"Model not allowed: {request.model}")

    async def frame_generator() -> AsyncGenerator[str, None]:
        try:
            async for frame in services.producer.frames(
                request.prompt,
                model=request.model,
                is_edit=request.is_edit,
                context=request.context,
            ):
                yield frame
        except Exception as e:
            logger.error("generate_stream error: %s", str(e))
            yield model_frame("error", error=str(e))

    return StreamingResponse(frame_generator(), headers=SSE_HEADERS)
