import json
import time
from typing import Any


SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

FRAME_PREFIX = "data: "


def sse_format(event: dict[str, Any]) -> str:
    return f"{FRAME_PREFIX}{json.dumps(event)}\n\n"


def emit_event(
    task_id: str, event_type: str, data: Any = None, error: Any = None
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "task_id": task_id,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
        "data": data,
        "error": error,
    }


def model_frame(frame_type: str, **payload: Any) -> str:
    """Format one frame of the model event stream (`type` discriminator plus payload)."""
    return sse_format({"type": frame_type, **payload})
