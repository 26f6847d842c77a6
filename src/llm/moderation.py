"""
Moderation client: the required pre-check on every free-text user message.

Single attempt per call, typed errors on failure (retry lives in the
engine). The ``none`` provider passes everything and exists for local
development and tenants with moderation disabled.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog

from src.core.config import settings
from src.core.exceptions import LLMInvalidResponseError
from src.llm.client import _map_transport_error

log = structlog.get_logger(__name__)


@dataclass
class ModerationResult:
    flagged: bool
    categories: Dict[str, bool] = field(default_factory=dict)
    scores: Dict[str, float] = field(default_factory=dict)
    model: str = ""

    def verdict(self) -> Dict[str, Any]:
        """Compact verdict stored on flagged thread items."""
        return {
            "flagged": self.flagged,
            "categories": sorted(k for k, v in self.categories.items() if v),
            "model": self.model,
        }


class ModerationClient(ABC):
    @abstractmethod
    async def moderate(self, text: str) -> ModerationResult:
        pass


class PassThroughModerationClient(ModerationClient):
    """Flags nothing."""

    async def moderate(self, text: str) -> ModerationResult:
        return ModerationResult(flagged=False, model="none")


class OpenAIModerationClient(ModerationClient):
    """OpenAI moderations endpoint via httpx."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "omni-moderation-latest",
    ):
        self.api_key = api_key or settings.openai_api_key
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY not configured. Set it in .env.")
        self.timeout = timeout or settings.moderation_timeout_seconds
        self.base_url = base_url.rstrip("/")
        self.model = model

    async def moderate(self, text: str) -> ModerationResult:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/moderations",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"model": self.model, "input": text},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            if isinstance(e, ValueError):
                raise LLMInvalidResponseError("moderation returned invalid JSON") from e
            raise _map_transport_error("openai-moderation", e, self.timeout) from e

        results = data.get("results") or []
        if not results:
            raise LLMInvalidResponseError("Moderation response has no results")
        first = results[0]

        result = ModerationResult(
            flagged=bool(first.get("flagged")),
            categories=first.get("categories") or {},
            scores=first.get("category_scores") or {},
            model=data.get("model", self.model),
        )
        log.info(
            "moderation_complete",
            flagged=result.flagged,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result


def get_moderation_client(provider: Optional[str] = None) -> ModerationClient:
    provider = provider or settings.moderation_provider
    if provider == "none":
        return PassThroughModerationClient()
    if provider == "openai":
        return OpenAIModerationClient()
    raise ValueError(
        f"Unknown moderation provider '{provider}'. Supported providers: none, openai"
    )
