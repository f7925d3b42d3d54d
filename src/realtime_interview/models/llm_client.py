"""
LLM client abstraction.

Provides a unified interface for the decision and response-generation models,
served by a local Ollama instance over its HTTP API.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import BaseModel, Field

from realtime_interview.config import get_settings

logger = logging.getLogger(__name__)

JSON_ONLY_INSTRUCTION = "You must respond with valid JSON only. No additional text or explanation."


class Message(BaseModel):
    """A message in a conversation."""

    role: str = Field(..., description="Role of the speaker (system, user, assistant)")
    content: str = Field(..., description="Message content")


class LLMResponse(BaseModel):
    """Response from an LLM."""

    content: str = Field(..., description="Generated text content")
    finish_reason: str = Field(default="stop", description="Reason for completion")
    usage: dict[str, int] = Field(
        default_factory=dict,
        description="Token usage information",
    )
    model: str = Field(default="", description="Model used for generation")
    raw_response: dict[str, Any] = Field(
        default_factory=dict,
        description="Raw response from the API",
    )


class LLMError(Exception):
    """Exception raised when the model server fails or is unreachable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMClientBase(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            **kwargs: Additional model-specific parameters.

        Returns:
            Generated response.
        """
        ...

    @abstractmethod
    def stream_chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """
        Stream a chat completion token by token.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            **kwargs: Additional model-specific parameters.

        Yields:
            Text chunks in generation order.
        """
        ...

    async def complete(
        self,
        prompt: str,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """Generate a completion for a single user prompt."""
        return await self.chat([Message(role="user", content=prompt)], temperature, max_tokens, **kwargs)


class LLMClient(LLMClientBase):
    """
    Ollama-based LLM client.

    Talks to `/api/chat` with httpx. Non-streaming calls retry on failure;
    streaming calls surface failures to the caller as `LLMError`.
    """

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        max_retries: int | None = None,
        timeout: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the Ollama LLM client.

        Args:
            model: Default model name (a per-call `model=` overrides it).
            base_url: Ollama base URL (uses config if not provided).
            max_retries: Number of retries on failure (uses config if not provided).
            timeout: Request timeout in seconds (uses config if not provided).
            http_client: Pre-built client, mainly for tests.
        """
        settings = get_settings()
        self._model = model or settings.interviewer_model
        self._base_url = base_url or settings.llm_base_url
        self._max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self._timeout = timeout or settings.llm_timeout
        self._client = http_client

        logger.info(f"Initialized Ollama LLM client at {self._base_url} with model: {self._model}")

    @property
    def model(self) -> str:
        """Get the default model name."""
        return self._model

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    def _build_payload(
        self,
        messages: list[Message],
        temperature: float,
        max_tokens: int | None,
        *,
        model: str | None,
        stream: bool,
        json_mode: bool = False,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {"temperature": temperature}
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        payload: dict[str, Any] = {
            "model": model or self._model,
            "messages": [m.model_dump() for m in messages],
            "stream": stream,
            "options": options,
        }
        if json_mode:
            payload["format"] = "json"
        return payload

    async def _post_chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST a non-streaming chat request with retry logic.

        Raises:
            LLMError: If every attempt fails.
        """
        client = await self._get_client()
        last_error: LLMError | None = None
        attempts = 0

        while attempts <= self._max_retries:
            attempts += 1
            try:
                response = await client.post("/api/chat", json=payload)
                if response.status_code >= 400:
                    logger.warning(f"Ollama returned {response.status_code} (attempt {attempts}): {response.text[:200]}")
                    last_error = LLMError(
                        f"Ollama returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                    continue
                data = response.json()
                if "error" in data:
                    last_error = LLMError(str(data["error"]))
                    continue
                return data
            except httpx.TimeoutException:
                logger.warning(f"Ollama timed out after {self._timeout}s (attempt {attempts})")
                last_error = LLMError(f"Ollama timed out after {self._timeout} seconds")
            except httpx.HTTPError as e:
                logger.warning(f"Ollama request error (attempt {attempts}): {e}")
                last_error = LLMError(str(e))
            except ValueError as e:
                logger.warning(f"Ollama returned a non-JSON body (attempt {attempts}): {e}")
                last_error = LLMError("Ollama returned a non-JSON body")

        raise last_error or LLMError("Ollama failed after all retries")

    async def chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Generate a chat completion using Ollama.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            **kwargs: `model` and `json_mode` are honoured.

        Returns:
            Generated response; `finish_reason` is "error" on failure.
        """
        model = kwargs.get("model")
        payload = self._build_payload(
            messages,
            temperature,
            max_tokens,
            model=model,
            stream=False,
            json_mode=bool(kwargs.get("json_mode")),
        )
        try:
            data = await self._post_chat(payload)
        except LLMError as e:
            logger.error(f"Ollama chat failed: {e}")
            return LLMResponse(
                content="",
                finish_reason="error",
                model=payload["model"],
                raw_response={"error": str(e)},
            )

        usage = {
            key: int(data[key])
            for key in ("prompt_eval_count", "eval_count")
            if isinstance(data.get(key), int)
        }
        return LLMResponse(
            content=(data.get("message") or {}).get("content", "").strip(),
            finish_reason=data.get("done_reason", "stop"),
            usage=usage,
            model=data.get("model", payload["model"]),
            raw_response=data,
        )

    async def stream_chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """
        Stream a chat completion from Ollama's NDJSON response.

        Raises:
            LLMError: On HTTP failure, transport failure, or an error line.
        """
        client = await self._get_client()
        payload = self._build_payload(
            messages,
            temperature,
            max_tokens,
            model=kwargs.get("model"),
            stream=True,
        )
        try:
            async with client.stream("POST", "/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise LLMError(
                        f"Ollama returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping non-JSON stream line: {line[:100]}")
                        continue
                    if not isinstance(data, dict):
                        logger.debug(f"Skipping non-object stream line: {line[:100]}")
                        continue
                    if "error" in data:
                        raise LLMError(str(data["error"]))
                    message = data.get("message")
                    chunk = message.get("content", "") if isinstance(message, dict) else ""
                    if chunk:
                        yield str(chunk)
                    if data.get("done"):
                        break
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise LLMError(str(e)) from e

    async def chat_with_json(
        self,
        messages: list[Message],
        schema: dict[str, Any] | None = None,
        temperature: float = 0.2,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Generate a chat completion with JSON structured output.

        Args:
            messages: Conversation history.
            schema: Optional JSON schema for expected output.
            temperature: Sampling temperature (lower for more deterministic).
            **kwargs: Additional parameters.

        Returns:
            Parsed JSON response, or empty dict on error.
        """
        try:
            return await self.chat_with_json_strict(messages, schema, temperature, **kwargs)
        except LLMError as e:
            logger.warning(f"JSON chat failed, returning empty dict: {e}")
            return {}

    async def chat_with_json_strict(
        self,
        messages: list[Message],
        schema: dict[str, Any] | None = None,
        temperature: float = 0.2,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Like `chat_with_json`, but raises instead of returning `{}`.

        Raises:
            LLMError: If the call fails or no JSON object can be recovered.
        """
        if schema:
            instruction = f"{JSON_ONLY_INSTRUCTION} Your response must match this JSON schema: {json.dumps(schema)}"
        else:
            instruction = JSON_ONLY_INSTRUCTION
        augmented_messages = [Message(role="system", content=instruction)] + messages

        response = await self.chat(augmented_messages, temperature, json_mode=True, **kwargs)

        if response.finish_reason == "error":
            raise LLMError(str(response.raw_response.get("error", "model call failed")))
        if not response.content:
            raise LLMError("model returned an empty response")

        parsed = self.extract_json(response.content)
        if parsed is None:
            logger.debug(f"Response content: {response.content[:500]}")
            raise LLMError("model response did not contain parseable JSON")
        return parsed

    def extract_json(self, content: str) -> dict[str, Any] | None:
        """Pull the first balanced JSON object (or array) out of model text."""
        content = content.strip()

        start_idx = content.find("{")
        if start_idx == -1:
            start_idx = content.find("[")

        if start_idx != -1:
            bracket_count = 0
            end_idx = len(content)
            open_bracket = content[start_idx]
            close_bracket = "}" if open_bracket == "{" else "]"

            for i, char in enumerate(content[start_idx:], start=start_idx):
                if char == open_bracket:
                    bracket_count += 1
                elif char == close_bracket:
                    bracket_count -= 1
                    if bracket_count == 0:
                        end_idx = i + 1
                        break

            parsed = self._parse_json_loose(content[start_idx:end_idx])
            if isinstance(parsed, dict):
                return parsed
            if isinstance(parsed, list):
                return {"items": parsed}

        parsed = self._parse_json_loose(content)
        if isinstance(parsed, dict):
            return parsed
        if isinstance(parsed, list):
            return {"items": parsed}
        return None

    def _fix_json_string(self, json_str: str) -> str:
        """
        Attempt to fix common JSON issues from LLM output.

        Args:
            json_str: Raw JSON string that may have issues.

        Returns:
            Cleaned JSON string.
        """
        if not json_str:
            return ""

        result = json_str.strip()

        result = re.sub(r"^```(?:json)?\s*", "", result, flags=re.IGNORECASE)
        result = re.sub(r"\s*```$", "", result)

        result = (
            result.replace("“", '"')
            .replace("”", '"')
            .replace("‘", "'")
            .replace("’", "'")
        )

        # Trailing commas before a closing brace or bracket.
        result = re.sub(r",(\s*[}\]])", r"\1", result)

        result = re.sub(r"\bNone\b", "null", result)
        result = re.sub(r"\bTrue\b", "true", result)
        result = re.sub(r"\bFalse\b", "false", result)

        # Bare object keys, only right after { or , so values are untouched.
        result = re.sub(
            r"([\{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)",
            r'\1"\2"\3',
            result,
        )

        if result.count("'") > 0 and result.count('"') == 0:
            result = result.replace("'", '"')

        return result

    def _coerce_to_json_types(self, obj: Any) -> Any:
        """Coerce a Python literal to JSON-safe types."""
        if obj is ...:
            return None
        if obj is None or isinstance(obj, (str, int, float, bool)):
            return obj
        if isinstance(obj, dict):
            return {str(k): self._coerce_to_json_types(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple, set)):
            return [self._coerce_to_json_types(v) for v in obj]
        return str(obj)

    def _parse_json_loose(self, raw: str) -> dict[str, Any] | list[Any] | None:
        """Parse JSON with best-effort repair.

        Returns a dict/list on success, else None.
        """
        if not raw:
            return None

        cleaned = self._fix_json_string(raw)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass

        try:
            obj = ast.literal_eval(raw.strip())
        except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
            try:
                obj = ast.literal_eval(cleaned)
            except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
                return None

        if not isinstance(obj, (dict, list, tuple, set)):
            return None

        coerced = self._coerce_to_json_types(obj)
        try:
            return json.loads(json.dumps(coerced))
        except (TypeError, ValueError):
            return None

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
