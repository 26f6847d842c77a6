"""Tests for the completion clients.

HTTP is served by httpx.MockTransport, so request payloads and error
mapping are exercised without network access.
"""

import json
from unittest.mock import patch

import httpx
import pytest

from src.core.exceptions import (
    LLMError,
    LLMInvalidResponseError,
    LLMRateLimitError,
    LLMServiceUnavailableError,
    LLMTimeoutError,
)
from src.llm.client import (
    AnthropicClient,
    OpenAICompatibleClient,
    get_completion_client,
    to_anthropic_messages,
    to_anthropic_tools,
)

_RealAsyncClient = httpx.AsyncClient


def mock_http(handler):
    """Patch httpx.AsyncClient so every client routes through ``handler``."""

    def factory(*args, **kwargs):
        kwargs.pop("transport", None)
        return _RealAsyncClient(*args, transport=httpx.MockTransport(handler), **kwargs)

    return patch("src.llm.client.httpx.AsyncClient", side_effect=factory)


def openai_client(**overrides) -> OpenAICompatibleClient:
    options = dict(
        model="gpt-4o-mini",
        temperature=0.3,
        max_tokens=256,
        timeout=5.0,
        base_url="https://llm.test/v1",
        provider_name="openai",
        api_key="test-key",
    )
    options.update(overrides)
    return OpenAICompatibleClient(**options)


def anthropic_client() -> AnthropicClient:
    return AnthropicClient(
        model="claude-test",
        temperature=0.3,
        max_tokens=256,
        timeout=5.0,
        base_url="https://anthropic.test/v1",
        api_key="test-key",
    )


MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "I have a leak"},
]

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "record_details",
            "description": "Record details",
            "parameters": {"type": "object", "properties": {"issue": {"type": "string"}}},
        },
    }
]


class TestOpenAICompatibleClient:
    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="DEEPSEEK_API_KEY"):
            openai_client(provider_name="deepseek", api_key=None)

    @pytest.mark.asyncio
    async def test_text_reply(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "gpt-4o-mini",
                    "choices": [{"message": {"role": "assistant", "content": "Where is it?"}}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 4},
                },
            )

        with mock_http(handler):
            response = await openai_client().complete(
                MESSAGES, tools=TOOLS, model_params={"temperature": 0.0, "max_tokens": None}
            )

        assert response.content == "Where is it?"
        assert response.tool_calls == []
        assert response.usage == {"input_tokens": 12, "output_tokens": 4}
        assert seen["url"] == "https://llm.test/v1/chat/completions"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["temperature"] == 0.0
        assert seen["body"]["max_tokens"] == 256
        assert seen["body"]["tools"] == TOOLS

    @pytest.mark.asyncio
    async def test_tool_calls_parsed_in_order(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_a",
                                        "type": "function",
                                        "function": {
                                            "name": "record_details",
                                            "arguments": '{"issue": "leak"}',
                                        },
                                    },
                                    {
                                        "id": "call_b",
                                        "type": "function",
                                        "function": {
                                            "name": "submit_report",
                                            "arguments": {"summary": "Leak"},
                                        },
                                    },
                                ],
                            }
                        }
                    ]
                },
            )

        with mock_http(handler):
            response = await openai_client().complete(MESSAGES, tools=TOOLS)

        assert response.has_tool_calls
        assert [tc.id for tc in response.tool_calls] == ["call_a", "call_b"]
        assert json.loads(response.tool_calls[1].arguments) == {"summary": "Leak"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code, error_type",
        [
            (429, LLMRateLimitError),
            (503, LLMServiceUnavailableError),
            (400, LLMError),
        ],
    )
    async def test_http_errors_mapped(self, status_code, error_type):
        with mock_http(lambda request: httpx.Response(status_code, json={})):
            with pytest.raises(error_type):
                await openai_client().complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_timeout_mapped(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with mock_http(handler):
            with pytest.raises(LLMTimeoutError):
                await openai_client().complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with mock_http(handler):
            with pytest.raises(LLMServiceUnavailableError):
                await openai_client().complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        with mock_http(lambda request: httpx.Response(200, content=b"not json")):
            with pytest.raises(LLMInvalidResponseError):
                await openai_client().complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_no_choices(self):
        with mock_http(lambda request: httpx.Response(200, json={"choices": []})):
            with pytest.raises(LLMInvalidResponseError):
                await openai_client().complete(MESSAGES)


class TestAnthropicConversion:
    def test_system_messages_become_system_prompt(self):
        system, messages = to_anthropic_messages(
            [
                {"role": "system", "content": "One"},
                {"role": "system", "content": "Two"},
                {"role": "user", "content": "Hi"},
            ]
        )

        assert system == "One\n\nTwo"
        assert messages == [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]

    def test_tool_round_trip_blocks(self):
        _, messages = to_anthropic_messages(
            [
                {"role": "user", "content": "Leak at 94110"},
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_0",
                            "type": "function",
                            "function": {"name": "record_details", "arguments": '{"postal_code": "94110"}'},
                        }
                    ],
                },
                {"role": "tool", "tool_call_id": "call_0", "content": '{"status": "recorded"}'},
                {"role": "user", "content": "Thanks"},
            ]
        )

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"] == [
            {"type": "tool_use", "id": "call_0", "name": "record_details", "input": {"postal_code": "94110"}}
        ]
        # Tool result and the following user text share one user turn
        assert messages[2]["content"][0]["type"] == "tool_result"
        assert messages[2]["content"][0]["tool_use_id"] == "call_0"
        assert messages[2]["content"][1] == {"type": "text", "text": "Thanks"}

    def test_tools_converted(self):
        assert to_anthropic_tools(TOOLS) == [
            {
                "name": "record_details",
                "description": "Record details",
                "input_schema": TOOLS[0]["function"]["parameters"],
            }
        ]


class TestAnthropicClient:
    @pytest.mark.asyncio
    async def test_tool_use_response(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "claude-test",
                    "content": [
                        {"type": "text", "text": "Recording that."},
                        {"type": "tool_use", "id": "tu_1", "name": "record_details", "input": {"issue": "leak"}},
                    ],
                    "usage": {"input_tokens": 30, "output_tokens": 9},
                },
            )

        with mock_http(handler):
            response = await anthropic_client().complete(MESSAGES, tools=TOOLS)

        assert response.content == "Recording that."
        assert response.tool_calls[0].id == "tu_1"
        assert json.loads(response.tool_calls[0].arguments) == {"issue": "leak"}
        assert response.usage == {"input_tokens": 30, "output_tokens": 9}
        assert seen["headers"]["x-api-key"] == "test-key"
        assert seen["body"]["system"] == "Be brief."
        assert seen["body"]["tools"][0]["name"] == "record_details"

    @pytest.mark.asyncio
    async def test_overloaded_is_transient(self):
        with mock_http(lambda request: httpx.Response(529, json={})):
            with pytest.raises(LLMServiceUnavailableError):
                await anthropic_client().complete(MESSAGES)


class TestFactory:
    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            get_completion_client("nonexistent")

    def test_openai_compatible_provider(self):
        with patch("src.llm.client.settings") as mock_settings:
            mock_settings.llm_completion_model = None
            mock_settings.llm_base_url = None
            mock_settings.llm_timeout_seconds = 12.0
            mock_settings.deepseek_api_key = "ds-key"

            client = get_completion_client("deepseek")

        assert isinstance(client, OpenAICompatibleClient)
        assert client.provider_name == "deepseek"
        assert client.model == "deepseek-chat"
        assert client.timeout == 12.0
