"""
OpenAI-compatible chat-completion client.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` and
``/v1/models`` wire protocol -- OpenAI itself, gateways, vLLM, LM Studio,
LocalAI, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from agentchat.errors import UpstreamError
from agentchat.llm.providers.base import CompletionClient
from agentchat.llm.types import Message, ModelInfo, RawToolDelta, StreamChunk

logger = logging.getLogger(__name__)

MODELS_UNAVAILABLE = "Could not fetch models. Please check your API key and Base URL."
MALFORMED_RESPONSE = "Malformed completion response"


class OpenAICompatClient(CompletionClient):
    """
    Stream-capable client for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"``.
    model:
        Model identifier sent in the ``model`` field.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    timeout:
        HTTP request timeout in seconds.
    max_retries:
        Number of automatic retries on transient HTTP errors (5xx, 429,
        transport failures).  Never applied once stream bytes were consumed.
    transport:
        Optional ``httpx`` transport, used by tests.
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        api_key: str = "",
        timeout: float = 120.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(model)
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._max_retries = max_retries
        self._transport = transport

    @property
    def name(self) -> str:
        return "openai-compat"

    @property
    def url(self) -> str:
        return self._url

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    # ------------------------------------------------------------------
    # Client interface
    # ------------------------------------------------------------------

    async def chat(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        stream: bool = True,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamChunk]:
        body = self._build_body(messages, tools, stream)
        headers = self._build_headers(stream)
        effective_timeout = timeout or self._timeout

        try:
            if stream:
                async for chunk in self._stream_request(body, headers, effective_timeout):
                    yield chunk
            else:
                result = await self._sync_request(body, headers, effective_timeout)
                yield result
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream request failed: {exc}") from exc

    async def list_models(self) -> list[ModelInfo]:
        url = f"{self._url}/models"
        try:
            async with self._client(self._timeout) as client:
                resp = await client.get(url, headers=self._build_headers(False))
                resp.raise_for_status()
                data = resp.json()
            models = [
                ModelInfo(id=item["id"], name=item["id"])
                for item in data["data"]
            ]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Failed to fetch models from %s: %s", url, exc)
            raise UpstreamError(MODELS_UNAVAILABLE) from exc
        return sorted(models, key=lambda m: m.name)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_headers(self, stream: bool) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict] | None,
        stream: bool,
    ) -> dict:
        wire_messages = []
        for msg in messages:
            m: dict = {"role": msg.role, "content": msg.content}
            if msg.tool_calls:
                m["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": tc.arguments,
                        },
                    }
                    for tc in msg.tool_calls
                ]
            if msg.tool_call_id:
                m["tool_call_id"] = msg.tool_call_id
            wire_messages.append(m)

        body: dict = {
            "model": self._model,
            "messages": wire_messages,
            "stream": stream,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        logger.info(
            "REQUEST: model=%s tools=%d messages=%d stream=%s api_key=%s...",
            self._model,
            len(tools) if tools else 0,
            len(wire_messages),
            stream,
            self._api_key[:6] if self._api_key else "(none)",
        )
        return body

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Pull a readable message out of an error response."""
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return f"HTTP {response.status_code}: {err['message']}"
            if isinstance(err, str):
                return f"HTTP {response.status_code}: {err}"
        return f"HTTP {response.status_code}"

    # ------------------------------------------------------------------
    # Streaming request
    # ------------------------------------------------------------------

    async def _stream_request(
        self,
        body: dict,
        headers: dict[str, str],
        timeout: float,
    ) -> AsyncIterator[StreamChunk]:
        url = f"{self._url}/chat/completions"

        last_error: Exception | None = None
        for attempt in range(1 + self._max_retries):
            started = False
            try:
                async with self._client(timeout) as client:
                    async with client.stream(
                        "POST", url, json=body, headers=headers
                    ) as response:
                        if response.status_code == 429 or response.status_code >= 500:
                            # Retryable -- read body so the connection is released.
                            await response.aread()
                            last_error = UpstreamError(self._error_message(response))
                            continue

                        if response.status_code >= 400:
                            await response.aread()
                            raise UpstreamError(self._error_message(response))

                        async for chunk in self._parse_sse_stream(response):
                            started = True
                            yield chunk
                        return  # success
            except httpx.TransportError as exc:
                if started:
                    raise UpstreamError(f"Stream interrupted: {exc}") from exc
                last_error = exc
                if attempt < self._max_retries:
                    continue
                raise

        if last_error is not None:
            raise last_error

    async def _parse_sse_stream(
        self, response: httpx.Response
    ) -> AsyncIterator[StreamChunk]:
        """
        Parse Server-Sent Events from the response line stream.

        Each SSE event has the form::

            data: {json}\\n\\n

        The sentinel ``data: [DONE]`` terminates the stream.
        """
        async for line in response.aiter_lines():
            line = line.rstrip("\r")
            if not line or not line.startswith("data:"):
                continue

            data_str = line[len("data:"):].strip()
            if data_str == "[DONE]":
                yield StreamChunk(done=True)
                return

            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])
                continue

            if isinstance(data, dict) and data.get("error"):
                raise UpstreamError(f"Upstream stream error: {data['error']}")

            chunk = self._sse_data_to_chunk(data)
            if chunk is not None:
                yield chunk

        # If the stream ends without [DONE], emit a final chunk.
        yield StreamChunk(done=True)

    def _sse_data_to_chunk(self, data: object) -> StreamChunk | None:
        """Convert a parsed SSE ``data`` payload into a ``StreamChunk``."""
        choice = _first_choice(data)
        if choice is None:
            return None
        delta = _as_dict(choice.get("delta"))
        tool_deltas = _tool_deltas(delta.get("tool_calls"), streamed=True)
        return StreamChunk(
            delta=_as_text(delta.get("content")),
            tool_deltas=tool_deltas or None,
            done=choice.get("finish_reason") is not None,
        )

    # ------------------------------------------------------------------
    # Non-streaming request
    # ------------------------------------------------------------------

    async def _sync_request(
        self,
        body: dict,
        headers: dict[str, str],
        timeout: float,
    ) -> StreamChunk:
        url = f"{self._url}/chat/completions"

        last_error: Exception | None = None
        for attempt in range(1 + self._max_retries):
            try:
                async with self._client(timeout) as client:
                    resp = await client.post(url, json=body, headers=headers)

                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = UpstreamError(self._error_message(resp))
                    continue
                if resp.status_code >= 400:
                    raise UpstreamError(self._error_message(resp))
                try:
                    data = resp.json()
                except ValueError as exc:
                    raise UpstreamError(MALFORMED_RESPONSE) from exc
            except httpx.TransportError as exc:
                last_error = exc
                if attempt < self._max_retries:
                    continue
                raise
            else:
                return self._parse_non_stream(data)

        if last_error is not None:
            raise last_error
        # Should never reach here.
        raise RuntimeError("unreachable")  # pragma: no cover

    def _parse_non_stream(self, data: object) -> StreamChunk:
        """Convert a non-streaming response into a single ``StreamChunk``."""
        choice = _first_choice(data)
        if choice is None:
            return StreamChunk(done=True)
        message = _as_dict(choice.get("message"))
        return StreamChunk(
            delta=_as_text(message.get("content")),
            tool_deltas=_tool_deltas(message.get("tool_calls"), streamed=False),
            done=True,
        )


# ----------------------------------------------------------------------
# Payload shape checks
# ----------------------------------------------------------------------


def _as_dict(value: object) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise UpstreamError(MALFORMED_RESPONSE)
    return value


def _as_text(value: object) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise UpstreamError(MALFORMED_RESPONSE)
    return value


def _first_choice(data: object) -> dict | None:
    """The first entry of ``choices``, or ``None`` when there is none."""
    if not isinstance(data, dict):
        raise UpstreamError(MALFORMED_RESPONSE)
    choices = data.get("choices")
    if not choices:
        return None
    if not isinstance(choices, list):
        raise UpstreamError(MALFORMED_RESPONSE)
    return _as_dict(choices[0])


def _tool_deltas(raw_tcs: object, *, streamed: bool) -> list[RawToolDelta] | None:
    """
    Convert wire tool-call entries into ``RawToolDelta`` fragments.

    Streamed entries carry their own slot ``index`` (entries without one are
    skipped); a whole message's entries are numbered by position.
    """
    if not raw_tcs:
        return None
    if not isinstance(raw_tcs, list):
        raise UpstreamError(MALFORMED_RESPONSE)
    deltas: list[RawToolDelta] = []
    for position, raw in enumerate(raw_tcs):
        raw_tc = _as_dict(raw)
        idx = raw_tc.get("index") if streamed else position
        if idx is None:
            continue
        if not isinstance(idx, int) or isinstance(idx, bool):
            raise UpstreamError(MALFORMED_RESPONSE)
        func = _as_dict(raw_tc.get("function"))
        call_id = raw_tc.get("id")
        if call_id is not None and not isinstance(call_id, str):
            raise UpstreamError(MALFORMED_RESPONSE)
        deltas.append(
            RawToolDelta(
                call_index=idx,
                id=call_id,
                name_delta=_as_text(func.get("name")),
                args_delta=_as_text(func.get("arguments")),
            )
        )
    return deltas
