import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError

from .schemas import PullProgressEvent


logger = logging.getLogger("uvicorn.error")


class NDJSONDecoder:
    """Incremental newline-delimited JSON decoder.

    Chunks may split lines (and UTF-8 sequences) anywhere; the trailing
    fragment is carried over until a newline arrives or ``flush`` is called.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> List[Dict[str, Any]]:
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    @property
    def pending(self) -> str:
        return self._buffer

    def _parse_lines(self, lines: List[str]) -> List[Dict[str, Any]]:
        parsed: List[Dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Failed to parse progress line: %r", line)
                continue
            if not isinstance(value, dict):
                logger.warning("Ignoring non-object progress line: %r", line)
                continue
            parsed.append(value)
        return parsed


def _to_event(payload: Dict[str, Any]) -> Optional[PullProgressEvent]:
    try:
        return PullProgressEvent.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Invalid progress payload %r: %s", payload, exc)
        return None


async def decode_progress_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[PullProgressEvent]:
    decoder = NDJSONDecoder()
    async for chunk in chunks:
        for payload in decoder.feed(chunk):
            event = _to_event(payload)
            if event is not None:
                yield event
    for payload in decoder.flush():
        event = _to_event(payload)
        if event is not None:
            yield event
