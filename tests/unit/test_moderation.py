"""Tests for the moderation clients."""

import json
from unittest.mock import patch

import httpx
import pytest

from src.core.exceptions import LLMInvalidResponseError, LLMTimeoutError
from src.llm.moderation import (
    ModerationResult,
    OpenAIModerationClient,
    PassThroughModerationClient,
    get_moderation_client,
)

_RealAsyncClient = httpx.AsyncClient


def mock_http(handler):
    def factory(*args, **kwargs):
        kwargs.pop("transport", None)
        return _RealAsyncClient(*args, transport=httpx.MockTransport(handler), **kwargs)

    return patch("src.llm.moderation.httpx.AsyncClient", side_effect=factory)


def client() -> OpenAIModerationClient:
    return OpenAIModerationClient(api_key="test-key", timeout=2.0, base_url="https://mod.test/v1")


@pytest.mark.asyncio
async def test_flagged_result():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "omni-moderation-latest",
                "results": [
                    {
                        "flagged": True,
                        "categories": {"violence": True, "hate": False},
                        "category_scores": {"violence": 0.93, "hate": 0.01},
                    }
                ],
            },
        )

    with mock_http(handler):
        result = await client().moderate("I will attack")

    assert seen["body"] == {"model": "omni-moderation-latest", "input": "I will attack"}
    assert result.flagged
    assert result.verdict() == {
        "flagged": True,
        "categories": ["violence"],
        "model": "omni-moderation-latest",
    }


@pytest.mark.asyncio
async def test_empty_results_invalid():
    with mock_http(lambda request: httpx.Response(200, json={"results": []})):
        with pytest.raises(LLMInvalidResponseError):
            await client().moderate("hello")


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with mock_http(handler):
        with pytest.raises(LLMTimeoutError):
            await client().moderate("hello")


@pytest.mark.asyncio
async def test_pass_through_flags_nothing():
    result = await PassThroughModerationClient().moderate("anything at all")

    assert result == ModerationResult(flagged=False, model="none")


def test_factory():
    assert isinstance(get_moderation_client("none"), PassThroughModerationClient)
    with pytest.raises(ValueError):
        get_moderation_client("acme")
