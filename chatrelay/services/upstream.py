"""Upstream completion client — streams chat completions from OpenRouter.

One shared ``httpx.AsyncClient`` per process (created in the app lifespan).
Timeouts:
  - connect: establishing the upstream connection
  - read:    idle time between two chunks of the response body
  - total:   overall stream deadline, checked between chunks
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncGenerator, Sequence

import httpx

from chatrelay.core.config import Settings
from chatrelay.core.errors import UpstreamError
from chatrelay.models.message import ChatMessage, dump_messages
from chatrelay.services.sse import DONE_MARKER, ServerSentEvent, SSEDecoder

logger = logging.getLogger(__name__)


class UpstreamClient:
    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self._http = http
        self._settings = settings

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> UpstreamClient:
        timeout = httpx.Timeout(
            settings.upstream_idle_timeout,
            connect=settings.upstream_connect_timeout,
        )
        http = httpx.AsyncClient(
            base_url=settings.openrouter_base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {settings.openrouter_api_key}",
                "HTTP-Referer": settings.app_referer,
                "X-Title": settings.app_title,
            },
        )
        return cls(http, settings)

    async def aclose(self) -> None:
        await self._http.aclose()

    def build_payload(self, model: str, messages: Sequence[ChatMessage]) -> dict:
        return {
            "model": model,
            "messages": dump_messages(messages),
            "stream": True,
            "temperature": self._settings.chat_temperature,
            "max_tokens": self._settings.chat_max_tokens,
        }

    async def stream_completion(
        self, model: str, messages: Sequence[ChatMessage]
    ) -> AsyncGenerator[str, None]:
        """Yield text deltas in arrival order.

        Returns normally only after the terminal ``[DONE]`` marker. Every other
        way the stream can end raises UpstreamError.
        """
        payload = self.build_payload(model, messages)
        deadline = time.monotonic() + self._settings.upstream_total_timeout
        decoder = SSEDecoder()

        try:
            async with self._http.stream(
                "POST", "/chat/completions", json=payload
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    logger.warning(
                        "Upstream returned %s for model %s: %s",
                        response.status_code, model, body[:500],
                    )
                    raise UpstreamError(
                        f"Upstream API error: {response.status_code}",
                        upstream_status=response.status_code,
                    )

                async for text in response.aiter_text():
                    for event in decoder.feed(text):
                        if event.data == DONE_MARKER:
                            return
                        delta = _parse_delta(event)
                        if delta:
                            yield delta
                    if time.monotonic() > deadline:
                        raise UpstreamError("Upstream stream exceeded the time limit")

                for event in decoder.flush():
                    if event.data == DONE_MARKER:
                        return
                    delta = _parse_delta(event)
                    if delta:
                        yield delta
        except httpx.TimeoutException as exc:
            raise UpstreamError("Upstream request timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream connection failed: {exc}") from exc

        raise UpstreamError("Upstream stream ended before completion")


def _parse_delta(event: ServerSentEvent) -> str | None:
    """Extract ``choices[0].delta.content`` from one upstream event."""
    try:
        parsed = json.loads(event.data)
    except json.JSONDecodeError:
        logger.warning("Skipping unparseable upstream event: %.200s", event.data)
        return None

    if not isinstance(parsed, dict):
        return None
    if "error" in parsed:
        error = parsed["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise UpstreamError(f"Upstream error: {message or 'unknown'}")

    choices = parsed.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else None
