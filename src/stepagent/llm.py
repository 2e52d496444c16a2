"""
LLM Client - Abstraction over LLM backends.

This client works with any OpenAI-compatible API:
- vLLM (http://localhost:8000/v1)
- Ollama (http://localhost:11434/v1)
- OpenAI itself

The backend is swappable via configuration. Requests use layered
timeouts and retry on timeouts, network errors, 429 and 503.

``stream_chat`` reads server-sent events: every ``data:`` line carries a
JSON delta until the ``[DONE]`` sentinel. Text deltas are yielded as
StreamChunks as they arrive; tool-call deltas are accumulated and
returned, with the full text, as the generator's ChatResponse.
"""

import json
import logging
import time
from collections.abc import Callable, Generator
from typing import Any

import httpx

from stepagent.config import LLMConfig
from stepagent.errors import LLMError
from stepagent.tool_executor import new_call_id
from stepagent.types import Role, StreamChunk, ToolCall

logger = logging.getLogger(__name__)

# Default timeout configuration (in seconds)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 180.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0

RETRYABLE_STATUS = {429, 503}


class LLMClient:
    """
    Synchronous client for OpenAI-compatible chat completion APIs.

    Pass ``transport`` to route requests through a custom httpx
    transport (for example ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the client with configuration.

        Args:
            config: LLM configuration (model, API key, etc.)
            max_retries: Maximum number of retries for retryable errors
            retry_delay: Seconds to wait before retrying
            transport: Optional httpx transport
            sleep: Function used to wait between retries
        """
        self.config = config or LLMConfig.from_env()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=DEFAULT_READ_TIMEOUT,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )

        self._client = httpx.Client(
            base_url=self.config.base_url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def _payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        tool_choice: str | dict[str, Any] | None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice
        if stream:
            payload["stream"] = True
        return payload

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> "ChatResponse":
        """
        Send a chat completion request with automatic retry.

        Args:
            messages: The conversation history in OpenAI format
            tools: Optional list of tool definitions
            tool_choice: Optional tool choice constraint

        Returns:
            ChatResponse with the assistant's response

        Raises:
            LLMError: If all retries are exhausted or a non-retryable error occurs
        """
        payload = self._payload(messages, tools, tool_choice)
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retry attempt {attempt}/{self.max_retries} after {self.retry_delay}s delay...")
                self._sleep(self.retry_delay)

            logger.debug(f"Sending chat request with {len(messages)} messages (attempt {attempt + 1})")

            try:
                response = self._client.post("/chat/completions", json=payload)
                response.raise_for_status()
                return ChatResponse.from_api_response(response.json())

            except httpx.TimeoutException as e:
                logger.warning(f"Request timed out (attempt {attempt + 1}): {e}")
                last_error = e

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status not in RETRYABLE_STATUS:
                    logger.error(f"HTTP error: {status} - {e.response.text}")
                    raise LLMError(f"HTTP {status}: {e.response.text}") from e
                if status == 429:
                    self._wait_for_rate_limit(e.response)
                else:
                    logger.warning(f"Service unavailable (attempt {attempt + 1}): {e}")
                last_error = e

            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt + 1}): {e}")
                last_error = e

            except (KeyError, IndexError, ValueError) as e:
                raise LLMError(f"Malformed chat completion response: {e}") from e

        logger.error(f"All {self.max_retries + 1} attempts failed. Last error: {last_error}")
        raise LLMError(f"Request failed after {self.max_retries + 1} attempts: {last_error}") from last_error

    def _wait_for_rate_limit(self, response: httpx.Response) -> None:
        retry_after = response.headers.get("Retry-After")
        try:
            wait_time = float(retry_after) if retry_after else self.retry_delay
        except ValueError:
            wait_time = self.retry_delay
        logger.warning(f"Rate limited. Waiting {wait_time}s")
        self._sleep(wait_time)

    def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> Generator[StreamChunk, None, "ChatResponse"]:
        """
        Stream a chat completion.

        Yields a StreamChunk per text delta. The generator returns the
        assembled ChatResponse (use ``yield from`` to receive it).
        Streaming requests are not retried.

        Raises:
            LLMError: on HTTP, network or decoding errors
        """
        payload = self._payload(messages, tools, tool_choice, stream=True)
        logger.debug(f"Streaming chat request with {len(messages)} messages")

        content: list[str] = []
        partial_calls: dict[int, dict[str, Any]] = {}
        finish_reason = "stop"

        try:
            with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    response.read()
                    logger.error(f"HTTP error: {response.status_code} - {response.text}")
                    raise LLMError(f"HTTP {response.status_code}: {response.text}")

                for data in iter_sse_data(response.iter_lines()):
                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}

                    text = delta.get("content")
                    if text:
                        content.append(text)
                        yield StreamChunk(content=text, role=Role.ASSISTANT)

                    for tc in delta.get("tool_calls") or []:
                        _merge_tool_call_delta(partial_calls, tc)

                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            logger.warning(f"Streaming request failed: {e}")
            raise LLMError(f"Streaming request failed: {e}") from e

        tool_calls = [
            _tool_call_from_parts(partial_calls[index])
            for index in sorted(partial_calls)
        ]
        return ChatResponse(
            content="".join(content),
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            raw_response={"streamed": True},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def iter_sse_data(lines: Any) -> Generator[dict[str, Any], None, None]:
    """
    Decode the JSON payloads of server-sent ``data:`` lines.

    Stops at ``data: [DONE]``. Blank lines, comments and other fields are
    skipped.

    Raises:
        LLMError: if a data line is not valid JSON
    """
    for raw in lines:
        line = raw.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return
        try:
            yield json.loads(data)
        except json.JSONDecodeError as e:
            raise LLMError(f"Invalid stream event: {data[:200]}") from e


def _merge_tool_call_delta(partial_calls: dict[int, dict[str, Any]], delta: dict[str, Any]) -> None:
    index = delta.get("index", len(partial_calls))
    entry = partial_calls.setdefault(index, {"id": None, "name": "", "arguments": ""})
    if delta.get("id"):
        entry["id"] = delta["id"]
    function = delta.get("function") or {}
    if function.get("name"):
        entry["name"] += function["name"]
    if function.get("arguments"):
        entry["arguments"] += function["arguments"]


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return arguments if isinstance(arguments, dict) else {"value": arguments}


def _tool_call_from_parts(parts: dict[str, Any]) -> ToolCall:
    return ToolCall(
        id=parts["id"] or new_call_id(),
        name=parts["name"],
        arguments=_parse_arguments(parts["arguments"]),
    )


class ChatResponse:
    """
    Response from a chat completion request.

    Wraps the API response and provides access to the content and any
    tool calls.
    """

    def __init__(
        self,
        content: str | None,
        tool_calls: list[ToolCall] | None,
        finish_reason: str,
        raw_response: dict[str, Any],
    ) -> None:
        self.content = content or ""
        self.tool_calls = tool_calls or []
        self.finish_reason = finish_reason
        self.raw_response = raw_response

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        """Parse an API response into a ChatResponse."""
        choice = data["choices"][0]
        message = choice["message"]

        tool_calls = [
            ToolCall(
                id=tc["id"],
                name=tc["function"]["name"],
                arguments=_parse_arguments(tc["function"].get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]

        return cls(
            content=message.get("content"),
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
            raw_response=data,
        )

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    @property
    def is_complete(self) -> bool:
        """Check if this is a complete response (no tool calls pending)."""
        return not self.has_tool_calls and self.finish_reason == "stop"

    def to_message(self) -> dict[str, Any]:
        """The assistant message to append to the transcript."""
        message: dict[str, Any] = {"role": Role.ASSISTANT.value, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in self.tool_calls
            ]
        return message
