"""Reasoning clients: the external capability behind analysis and patching."""

from __future__ import annotations

import logging
import os
from typing import Protocol, TypeVar

from pydantic import BaseModel

from ..errors import UpstreamUnavailableError
from ..retry import acall_with_retries
from .models import AnalysisConfig, ModelReply

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ReasoningClient(Protocol):
    async def complete_json(self, prompt: str, schema_model: type[M]) -> ModelReply[M]:
        """Send prompt and return the reply validated against schema_model."""
        ...


class GeminiReasoningClient:
    """Gemini-backed client with schema-constrained JSON output."""

    def __init__(self, cfg: AnalysisConfig, *, api_key: str | None = None) -> None:
        self.cfg = cfg
        self._api_key = api_key
        self._client = None

    def _get_client(self):
        if self._client is not None:
            return self._client

        api_key = self._api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not api_key:
            raise UpstreamUnavailableError("Missing GEMINI_API_KEY (or GOOGLE_API_KEY).")

        try:
            from google import genai
        except ImportError as e:
            raise UpstreamUnavailableError(
                "google-genai is required for analysis. Install with: pip install '.[ai]'"
            ) from e

        self._client = genai.Client(
            api_key=api_key,
            http_options={"timeout": int(self.cfg.timeout_s * 1000)},
        )
        return self._client

    async def complete_json(self, prompt: str, schema_model: type[M]) -> ModelReply[M]:
        client = self._get_client()
        schema = schema_model.model_json_schema()

        async def _once() -> ModelReply[M]:
            resp = await client.aio.models.generate_content(
                model=self.cfg.model,
                contents=prompt,
                config={
                    "response_mime_type": "application/json",
                    "response_json_schema": schema,
                    "temperature": self.cfg.temperature,
                },
            )
            text = resp.text or ""
            parsed = schema_model.model_validate_json(text)
            usage = getattr(resp, "usage_metadata", None)
            tokens = getattr(usage, "total_token_count", None) if usage else None
            return ModelReply(parsed=parsed, raw_text=text, model=self.cfg.model, tokens_used=tokens)

        return await acall_with_retries(
            _once,
            what="Gemini call",
            max_attempts=self.cfg.max_retries,
            base_delay=self.cfg.retry_base_delay,
        )
