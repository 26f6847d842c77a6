"""
Completion client abstraction for multiple LLM providers.

Provides an async interface for chat completions with tool calling:
- Request: ordered role-tagged messages (OpenAI format), tool schemas,
  model parameters
- Response: assistant text and/or ordered tool calls, plus token usage
- Structured logging of requests/responses with latency

Each call is a single attempt with its own timeout. Failures are raised as
typed errors (LLMTimeoutError, LLMRateLimitError, LLMServiceUnavailableError
are transient) and the engine applies the retry policy.

Supported providers:
- openai: OpenAI chat completions
- deepseek: DeepSeek (OpenAI-compatible)
- kimi: Moonshot AI (OpenAI-compatible)
- anthropic: Claude Messages API (tool_use blocks translated)
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from src.core.config import settings
from src.core.exceptions import (
    LLMError,
    LLMInvalidResponseError,
    LLMRateLimitError,
    LLMServiceUnavailableError,
    LLMTimeoutError,
)
from src.domain.models.thread import ToolCall

log = structlog.get_logger(__name__)


# =============================================================================
# Default configurations per provider
# =============================================================================

PROVIDER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "openai": dict(
        model="gpt-4o-mini",
        base_url="https://api.openai.com/v1",
        temperature=0.3,
        max_tokens=1024,
    ),
    "deepseek": dict(
        model="deepseek-chat",
        base_url="https://api.deepseek.com",
        temperature=0.3,
        max_tokens=1024,
    ),
    "kimi": dict(
        model="kimi-k2-0905-preview",
        base_url="https://api.moonshot.ai/v1",
        temperature=0.3,
        max_tokens=1024,
    ),
    "anthropic": dict(
        model="claude-sonnet-4-6",
        base_url="https://api.anthropic.com/v1",
        temperature=0.3,
        max_tokens=1024,
    ),
}

DEFAULT_PROVIDER = "openai"


# =============================================================================
# Response and Base Classes
# =============================================================================


@dataclass
class CompletionResponse:
    """Standardized completion response."""

    content: Optional[str]
    model: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0.0
    raw_response: Optional[Dict[str, Any]] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class CompletionClient(ABC):
    """Abstract base for completion providers."""

    provider_name: str = "unknown"

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model_params: Optional[Dict[str, Any]] = None,
    ) -> CompletionResponse:
        """
        Request one completion.

        Args:
            messages: Ordered OpenAI-format messages (system first)
            tools: OpenAI-format function tool schemas
            model_params: Overrides for model, temperature, max_tokens, tool_choice

        Returns:
            CompletionResponse with content, tool calls and usage

        Raises:
            LLMTimeoutError, LLMRateLimitError, LLMServiceUnavailableError:
                transient, safe to retry
            LLMError: Non-retryable provider error
            LLMInvalidResponseError: Response could not be parsed
        """
        pass


def _map_transport_error(provider: str, e: Exception, timeout: float) -> LLMError:
    """Translate an httpx failure into the typed LLM error hierarchy."""
    if isinstance(e, httpx.TimeoutException):
        log.warning("llm_timeout", provider=provider, timeout_seconds=timeout)
        return LLMTimeoutError(f"{provider} call timed out (timeout={timeout}s)")
    if isinstance(e, httpx.HTTPStatusError):
        status_code = e.response.status_code
        if status_code == 429:
            log.warning("llm_rate_limit", provider=provider)
            return LLMRateLimitError(f"{provider} rate limit exceeded")
        if status_code >= 500:
            log.warning("llm_server_error", provider=provider, status_code=status_code)
            return LLMServiceUnavailableError(
                f"{provider} unavailable (HTTP {status_code})"
            )
        log.error("llm_http_error", provider=provider, status_code=status_code)
        return LLMError(f"{provider} rejected request (HTTP {status_code})")
    if isinstance(e, httpx.TransportError):
        log.warning("llm_transport_error", provider=provider, error=str(e))
        return LLMServiceUnavailableError(f"{provider} unreachable: {e}")
    return LLMError(f"{provider} call failed: {e}")


# =============================================================================
# OpenAI-Compatible Client
# =============================================================================


class OpenAICompatibleClient(CompletionClient):
    """
    Client for providers following the OpenAI chat completions format.

    Used by OpenAI itself, DeepSeek and Kimi (Moonshot AI).
    """

    def __init__(
        self,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout: float,
        base_url: str,
        provider_name: str,
        api_key: Optional[str],
    ):
        if not api_key:
            raise ValueError(
                f"{provider_name.upper()}_API_KEY not configured. Set it in .env."
            )
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.provider_name = provider_name
        self.api_key = api_key

        log.info(
            "completion_client_initialized",
            provider=self.provider_name,
            model=self.model,
            timeout=self.timeout,
        )

    def build_payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        params: Dict[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": params.get("model") or self.model,
            "messages": messages,
            "temperature": params.get("temperature", self.temperature),
            "max_tokens": params.get("max_tokens") or self.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            if params.get("tool_choice"):
                payload["tool_choice"] = params["tool_choice"]
        return payload

    @staticmethod
    def parse_response(data: Dict[str, Any]) -> Tuple[Optional[str], List[ToolCall], Dict[str, int]]:
        choices = data.get("choices") or []
        if not choices:
            raise LLMInvalidResponseError("Completion response has no choices")
        message = choices[0].get("message") or {}

        tool_calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            if not raw.get("id") or not function.get("name"):
                raise LLMInvalidResponseError("Tool call without id or function name")
            arguments = function.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments or {})
            tool_calls.append(
                ToolCall(id=raw["id"], name=function["name"], arguments=arguments)
            )

        usage = {
            "input_tokens": (data.get("usage") or {}).get("prompt_tokens", 0),
            "output_tokens": (data.get("usage") or {}).get("completion_tokens", 0),
        }
        return message.get("content"), tool_calls, usage

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model_params: Optional[Dict[str, Any]] = None,
    ) -> CompletionResponse:
        params = {k: v for k, v in (model_params or {}).items() if v is not None}
        payload = self.build_payload(messages, tools, params)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        log.debug(
            "llm_call_start",
            provider=self.provider_name,
            model=payload["model"],
            message_count=len(messages),
            tool_count=len(tools or []),
        )

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions", headers=headers, json=payload
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            if isinstance(e, ValueError):
                raise LLMInvalidResponseError(
                    f"{self.provider_name} returned invalid JSON"
                ) from e
            raise _map_transport_error(self.provider_name, e, self.timeout) from e

        latency_ms = (time.perf_counter() - start) * 1000
        content, tool_calls, usage = self.parse_response(data)

        log.info(
            "llm_call_complete",
            provider=self.provider_name,
            model=data.get("model", payload["model"]),
            latency_ms=round(latency_ms, 2),
            input_tokens=usage["input_tokens"],
            output_tokens=usage["output_tokens"],
            tool_calls=[tc.name for tc in tool_calls],
        )

        return CompletionResponse(
            content=content,
            model=data.get("model", payload["model"]),
            tool_calls=tool_calls,
            usage=usage,
            latency_ms=latency_ms,
            raw_response=data,
        )


# =============================================================================
# Anthropic Client
# =============================================================================


def to_anthropic_messages(
    messages: List[Dict[str, Any]],
) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Convert OpenAI-format messages into (system, messages) for Anthropic.

    System messages are concatenated into the system prompt. Assistant tool
    calls become tool_use blocks and tool messages become tool_result
    blocks on a user turn. Consecutive same-role turns are merged since the
    Messages API requires alternation.
    """
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []

    def push(role: str, blocks: List[Dict[str, Any]]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": list(blocks)})

    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if role == "system":
            if content:
                system_parts.append(content)
        elif role == "user":
            push("user", [{"type": "text", "text": content or ""}])
        elif role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if content:
                blocks.append({"type": "text", "text": content})
            for tc in message.get("tool_calls") or []:
                function = tc.get("function") or {}
                try:
                    arguments = json.loads(function.get("arguments") or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": tc["id"],
                        "name": function.get("name", ""),
                        "input": arguments,
                    }
                )
            if blocks:
                push("assistant", blocks)
        elif role == "tool":
            push(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.get("tool_call_id"),
                        "content": content or "",
                    }
                ],
            )

    system = "\n\n".join(system_parts) if system_parts else None
    return system, converted


def to_anthropic_tools(tools: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    result = []
    for tool in tools or []:
        function = tool.get("function") or {}
        result.append(
            {
                "name": function.get("name"),
                "description": function.get("description", ""),
                "input_schema": function.get("parameters")
                or {"type": "object", "properties": {}},
            }
        )
    return result


class AnthropicClient(CompletionClient):
    """Anthropic Claude API client.

    Uses httpx for async HTTP calls to the Messages API.
    """

    provider_name = "anthropic"

    def __init__(
        self,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout: float,
        base_url: str,
        api_key: Optional[str] = None,
    ):
        self.api_key = api_key or settings.anthropic_api_key
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY not configured. Set it in .env.")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

        log.info(
            "completion_client_initialized",
            provider=self.provider_name,
            model=self.model,
            timeout=self.timeout,
        )

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model_params: Optional[Dict[str, Any]] = None,
    ) -> CompletionResponse:
        params = {k: v for k, v in (model_params or {}).items() if v is not None}
        system, converted = to_anthropic_messages(messages)

        payload: Dict[str, Any] = {
            "model": params.get("model") or self.model,
            "max_tokens": params.get("max_tokens") or self.max_tokens,
            "messages": converted,
            "temperature": params.get("temperature", self.temperature),
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = to_anthropic_tools(tools)

        headers = {
            "x-api-key": self.api_key,
            "content-type": "application/json",
            "anthropic-version": "2023-06-01",
        }

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/messages", headers=headers, json=payload
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            if isinstance(e, ValueError):
                raise LLMInvalidResponseError("anthropic returned invalid JSON") from e
            raise _map_transport_error(self.provider_name, e, self.timeout) from e

        latency_ms = (time.perf_counter() - start) * 1000

        text_parts = []
        tool_calls = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block["id"],
                        name=block["name"],
                        arguments=json.dumps(block.get("input") or {}),
                    )
                )

        usage = {
            "input_tokens": data.get("usage", {}).get("input_tokens", 0),
            "output_tokens": data.get("usage", {}).get("output_tokens", 0),
        }

        log.info(
            "llm_call_complete",
            provider=self.provider_name,
            model=data.get("model", payload["model"]),
            latency_ms=round(latency_ms, 2),
            input_tokens=usage["input_tokens"],
            output_tokens=usage["output_tokens"],
            tool_calls=[tc.name for tc in tool_calls],
        )

        return CompletionResponse(
            content="".join(text_parts) or None,
            model=data.get("model", payload["model"]),
            tool_calls=tool_calls,
            usage=usage,
            latency_ms=latency_ms,
            raw_response=data,
        )


# =============================================================================
# Client Factory
# =============================================================================


def get_completion_client(provider: Optional[str] = None) -> CompletionClient:
    """
    Factory for the completion client.

    Uses PROVIDER_DEFAULTS with optional environment overrides
    (LLM_COMPLETION_PROVIDER, LLM_COMPLETION_MODEL, LLM_BASE_URL).

    Raises:
        ValueError: If unknown provider configured or API key missing
    """
    provider = provider or settings.llm_completion_provider or DEFAULT_PROVIDER
    if provider not in PROVIDER_DEFAULTS:
        raise ValueError(
            f"Unknown LLM provider '{provider}'. "
            f"Supported providers: {', '.join(sorted(PROVIDER_DEFAULTS))}"
        )

    defaults = PROVIDER_DEFAULTS[provider]
    model = settings.llm_completion_model or defaults["model"]
    base_url = settings.llm_base_url or defaults["base_url"]

    if provider == "anthropic":
        return AnthropicClient(
            model=model,
            temperature=defaults["temperature"],
            max_tokens=defaults["max_tokens"],
            timeout=settings.llm_timeout_seconds,
            base_url=base_url,
        )

    api_keys = {
        "openai": settings.openai_api_key,
        "deepseek": settings.deepseek_api_key,
        "kimi": settings.kimi_api_key,
    }
    return OpenAICompatibleClient(
        model=model,
        temperature=defaults["temperature"],
        max_tokens=defaults["max_tokens"],
        timeout=settings.llm_timeout_seconds,
        base_url=base_url,
        provider_name=provider,
        api_key=api_keys[provider],
    )
