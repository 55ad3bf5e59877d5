import asyncio
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional

import httpx

from .errors import RemoteTransportError


logger = logging.getLogger("uvicorn.error")


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def events_to_byte_stream(events: AsyncIterable[Dict[str, Any]]) -> AsyncIterator[bytes]:
    async for event in events:
        yield sse_format(event).encode("utf-8")


class RemoteAssistantClient:
    """Client for the remote "ask" endpoint, which answers with an SSE stream of message events."""

    def __init__(self, url: str, api_token: Optional[str] = None):
        self.url = url
        self.api_token = api_token
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, read=None),
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def ask(
        self,
        payload: Dict[str, Any],
        abort: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        try:
            async with self.client.stream("POST", self.url, json=payload, headers=self._headers()) as resp:
                if not resp.is_success:
                    await resp.aread()
                    raise RemoteTransportError(
                        f"Remote assistant returned HTTP {resp.status_code}: {resp.text or resp.reason_phrase}"
                    )
                async for line in resp.aiter_lines():
                    if abort is not None and abort.is_set():
                        return
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        return
                    try:
                        event = json.loads(chunk)
                    except ValueError:
                        logger.warning("Skipping malformed remote event: %r", chunk)
                        continue
                    if isinstance(event, dict):
                        yield event
        except httpx.HTTPError as exc:
            raise RemoteTransportError(f"Remote assistant request failed: {exc}") from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
