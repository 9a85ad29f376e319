"""
LLM Client - async HTTP exchange with the model provider.

One client talks to one provider, chosen by the model prefix
(`openai:...` or `anthropic:...`). Requests and responses are converted
by crabclaw.providers; this module only deals with HTTP, error mapping,
retries and server-sent-event framing.

Error mapping:
- 401/403           -> AuthError (never retried)
- 429               -> RateLimitError (retried, honouring Retry-After)
- 5xx / other 4xx   -> ProviderApiError (never retried)
- connect/timeouts  -> NetworkError (retried with exponential backoff)
- 200 with an error body -> ProviderApiError
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx

from crabclaw.config import LLMConfig
from crabclaw.errors import (
    AuthError,
    LLMError,
    NetworkError,
    ProviderApiError,
    RateLimitError,
)
from crabclaw.providers import (
    build_request,
    check_error_payload,
    endpoint,
    headers,
    parse_model,
    parse_response,
    stream_decoder,
    tool_name_map,
)
from crabclaw.types import ChatResponse, Message, StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(status: int, body: str, response: httpx.Response | None = None) -> LLMError:
    """Map an HTTP error status to the error taxonomy."""
    snippet = body[:500]
    if status in (401, 403):
        return AuthError(f"authentication failed (HTTP {status}): {snippet}", status=status)
    if status == 429:
        retry_after = _retry_after(response) if response is not None else None
        return RateLimitError(f"rate limited (HTTP 429): {snippet}", retry_after=retry_after, status=status)
    return ProviderApiError(f"HTTP {status}: {snippet}", status=status)


class LLMClient:
    """
    Async client for the configured provider.

    Includes timeout and retry logic. Pass `transport` to route requests
    somewhere other than the network (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or LLMConfig.from_env()
        self.provider, self.model = parse_model(self.config.model)
        self.url = endpoint(self.provider, self.config.api_base)
        self._sleep = sleep

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=self.config.request_timeout,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )
        self._client = httpx.AsyncClient(
            headers=headers(self.provider, self.config.api_key),
            timeout=timeout,
            transport=transport,
        )

    def _body(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[dict[str, Any]],
        stream: bool,
    ) -> dict[str, Any]:
        return build_request(
            self.provider,
            self.model,
            messages=messages,
            system_prompt=system_prompt,
            tools=tools,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            stream=stream,
        )

    def _backoff(self, attempt: int, error: LLMError) -> float:
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return error.retry_after
        return self.config.retry_delay * (2 ** attempt)

    async def chat(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ChatResponse:
        """
        Send one request and return the complete response.

        Raises:
            LLMError: a subclass describing why the exchange failed
        """
        tools = tools or []
        body = self._body(messages, system_prompt, tools, stream=False)
        name_map = tool_name_map(tools)

        for attempt in range(self.config.max_retries + 1):
            logger.debug(f"Sending chat request with {len(messages)} messages (attempt {attempt + 1})")
            try:
                return parse_response(self.provider, await self._post(body), name_map)
            except (RateLimitError, NetworkError) as e:
                if attempt >= self.config.max_retries:
                    logger.error(f"All {attempt + 1} attempts failed. Last error: {e}")
                    raise
                delay = self._backoff(attempt, e)
                logger.warning(f"{e.message}; retrying in {delay:g}s ({attempt + 1}/{self.config.max_retries})")
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _post(self, body: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(self.url, json=body)
        except httpx.TimeoutException as e:
            raise NetworkError(f"request timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"request failed: {e}") from e
        if response.status_code >= 400:
            raise error_for_status(response.status_code, response.text, response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderApiError(f"response is not JSON: {response.text[:200]}") from e

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a response as ContentDelta / ToolCallDelta events ending in StreamDone.

        Retries happen only before the first event is yielded. Closing the
        generator early releases the connection.
        """
        tools = tools or []
        body = self._body(messages, system_prompt, tools, stream=True)
        name_map = tool_name_map(tools)

        for attempt in range(self.config.max_retries + 1):
            yielded = False
            try:
                async for event in self._stream_once(body, name_map):
                    yielded = True
                    yield event
                return
            except (RateLimitError, NetworkError) as e:
                if yielded or attempt >= self.config.max_retries:
                    raise
                delay = self._backoff(attempt, e)
                logger.warning(f"{e.message}; retrying stream in {delay:g}s")
                await self._sleep(delay)

    async def _stream_once(self, body: dict[str, Any], name_map: dict[str, str]) -> AsyncIterator[StreamEvent]:
        decoder = stream_decoder(self.provider, name_map)
        terminated = False
        stray: list[str] = []
        try:
            async with self._client.stream("POST", self.url, json=body) as response:
                if response.status_code >= 400:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise error_for_status(response.status_code, text, response)

                async for raw_line in response.aiter_lines():
                    line = raw_line.strip()
                    if not line or line.startswith(":") or line.startswith("event:"):
                        continue
                    if not line.startswith("data:"):
                        stray.append(line)
                        continue
                    payload = line[len("data:"):].strip()
                    if payload == "[DONE]":
                        terminated = True
                        break
                    try:
                        data = json.loads(payload)
                    except json.JSONDecodeError as e:
                        raise ProviderApiError(f"malformed stream chunk: {payload[:200]}") from e
                    for event in decoder.feed(data):
                        yield event
                    if getattr(decoder, "stopped", False):
                        terminated = True
                        break
        except httpx.TimeoutException as e:
            raise NetworkError(f"stream timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"stream failed: {e}") from e

        if not terminated and stray:
            # A plain JSON body instead of an event stream, usually an error.
            try:
                data = json.loads("\n".join(stray))
            except json.JSONDecodeError:
                data = None
            if data is not None:
                check_error_payload(data)
        if not terminated and decoder.finish_reason is None:
            raise NetworkError("stream ended before completion")
        yield decoder.done()

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
