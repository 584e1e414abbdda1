"""
Wire framing for progress events.
进度事件的传输帧格式。

Every event is one text frame:
每个事件对应一个文本帧：

    event: node_status
    data: {"node_id": "n1", "status": "running", ...}
    <blank line>

This is the Server-Sent Events layout, so the same text can be served as
`text/event-stream` or written to a log file and decoded later.
即 Server-Sent Events 格式，同一段文本既可作为 `text/event-stream` 输出，也可写入文件后再解析。
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from schema import StreamEvent

logger = logging.getLogger(__name__)

FRAME_SEPARATOR = "\n\n"


def encode_event(event: StreamEvent) -> str:
    """Serialize one event into a frame. 将单个事件序列化为一帧文本。"""
    data = event.payload.model_dump_json()
    return f"event: {event.type.value}\ndata: {data}{FRAME_SEPARATOR}"


async def encode_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """Frame an async event iterator, e.g. for a StreamingResponse body."""
    async for event in events:
        yield encode_event(event)


class FrameParser:
    """
    Incremental frame decoder.
    增量帧解析器。

    Network chunks do not respect frame boundaries, so the parser buffers
    the tail of every chunk until its blank-line terminator arrives.
    网络分片不会按帧边界切分，解析器会缓存每个分片末尾的不完整帧，直到收到空行结束符。
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        """
        Add a chunk and return every event completed by it.
        追加一个分片，返回由此凑齐的全部事件。
        """
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        events: list[StreamEvent] = []
        while FRAME_SEPARATOR in self._buffer:
            frame, self._buffer = self._buffer.split(FRAME_SEPARATOR, 1)
            event = self._parse_frame(frame)
            if event is not None:
                events.append(event)
        return events

    @property
    def pending(self) -> str:
        """Buffered text that does not form a complete frame yet."""
        return self._buffer

    @staticmethod
    def _parse_frame(frame: str) -> StreamEvent | None:
        event_type: str | None = None
        data_lines: list[str] = []
        for line in frame.split("\n"):
            if not line or line.startswith(":"):
                continue  # 注释行 / 心跳
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                event_type = value
            elif field == "data":
                data_lines.append(value)

        if event_type is None and not data_lines:
            return None
        if event_type is None:
            raise ValueError(f"Frame without an event type: {frame[:120]!r}")

        payload = json.loads("\n".join(data_lines)) if data_lines else {}
        return StreamEvent.model_validate({"type": event_type, "payload": payload})


def decode_events(text: str) -> list[StreamEvent]:
    """
    Decode a complete framed text. Trailing text that does not end with a
    blank line is rejected.
    解析完整的帧文本；末尾不完整的帧会被视为错误。
    """
    parser = FrameParser()
    events = parser.feed(text)
    if parser.pending.strip():
        raise ValueError(f"Incomplete trailing frame: {parser.pending[:120]!r}")
    return events
