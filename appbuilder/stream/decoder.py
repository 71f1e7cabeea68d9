import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from appbuilder.models import StreamEvent
from appbuilder.sse import FRAME_PREFIX


logger = logging.getLogger("appbuilder.stream.decoder")


EVENT_TYPES: frozenset[str] = frozenset(
    {
        "status",
        "thinking",
        "thinking_complete",
        "conversation",
        "stream",
        "component",
        "package",
        "complete",
        "error",
    }
)


class StreamDecoder:
    """Turn a byte stream of `data: {json}` lines into typed events.

    Lines without the frame prefix are ignored. A frame that fails to decode
    is logged and skipped so one bad line cannot abort a long generation;
    skipped frames are counted in `anomalies`.
    """

    def __init__(self) -> None:
        self.anomalies = 0
        self.frames = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    async def decode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        async for chunk in chunks:
            self._pending += self._decoder.decode(chunk)
            while "\n" in self._pending:
                line, self._pending = self._pending.split("\n", 1)
                event = self._parse_line(line)
                if event is not None:
                    yield event
        # Flush whatever arrived without a trailing newline
        self._pending += self._decoder.decode(b"", final=True)
        if self._pending.strip():
            event = self._parse_line(self._pending)
            self._pending = ""
            if event is not None:
                yield event

    def _parse_line(self, line: str) -> StreamEvent | None:
        line = line.rstrip("\r")
        if not line.startswith(FRAME_PREFIX):
            return None
        body = line[len(FRAME_PREFIX):]
        if not body.strip():
            return None
        self.frames += 1
        try:
            raw = json.loads(body)
        except json.JSONDecodeError as e:
            self.anomalies += 1
            logger.warning("skipping malformed frame (%s): %.200s", e, body)
            return None
        if not isinstance(raw, dict):
            self.anomalies += 1
            logger.warning("skipping non-object frame: %.200s", body)
            return None
        event_type = raw.pop("type", None)
        if event_type not in EVENT_TYPES:
            self.anomalies += 1
            logger.warning("skipping frame with unknown type %r", event_type)
            return None
        return StreamEvent(type=event_type, payload=raw)
