"""Analysis/patch reply schemas and configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

from ..models import Confidence


class AnalysisFindings(BaseModel):
    explanation: str = Field(description="Plain-language explanation of what the error means.")
    root_cause: str = Field(description="Most likely root cause, grounded in the evidence given.")
    recommendation: str = Field(description="Concrete next step to fix or mitigate the error.")
    confidence: Literal["LOW", "MEDIUM", "HIGH", "UNKNOWN"] = Field(
        description="How well the evidence supports the root cause."
    )

    def confidence_level(self) -> Confidence:
        return Confidence(self.confidence)


class PatchProposal(BaseModel):
    diff: str = Field(
        description="Unified diff (---/+++ headers, @@ hunks) that fixes the root cause."
    )
    file_name: str | None = Field(
        default=None, description="Repository-relative path of the file the diff changes."
    )


M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True, slots=True)
class ModelReply(Generic[M]):
    parsed: M
    raw_text: str
    model: str
    tokens_used: int | None = None


@dataclass(frozen=True, slots=True)
class AnalysisConfig:
    model: str = "gemini-2.5-flash"
    temperature: float = 0.0
    timeout_s: float = 60.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    redact: bool = True
    max_source_chars: int = 20_000
    lease_ttl_s: float = 300.0


def resolve_analysis_config(cfg: AnalysisConfig | None) -> AnalysisConfig:
    """Return config with optional env overrides applied."""
    if cfg is None:
        cfg = AnalysisConfig()

    overrides: dict[str, Any] = {}
    model = os.getenv("LOGAI_AI_MODEL")
    if model:
        overrides["model"] = model

    timeout = os.getenv("LOGAI_AI_TIMEOUT_S")
    if timeout:
        try:
            value = float(timeout)
        except ValueError as exc:
            raise ValueError("LOGAI_AI_TIMEOUT_S must be a number") from exc
        if value <= 0:
            raise ValueError("LOGAI_AI_TIMEOUT_S must be > 0")
        overrides["timeout_s"] = value

    retries = os.getenv("LOGAI_AI_MAX_RETRIES")
    if retries:
        try:
            value_i = int(retries)
        except ValueError as exc:
            raise ValueError("LOGAI_AI_MAX_RETRIES must be an integer") from exc
        if value_i < 1:
            raise ValueError("LOGAI_AI_MAX_RETRIES must be >= 1")
        overrides["max_retries"] = value_i

    lease_ttl = os.getenv("LOGAI_LEASE_TTL_S")
    if lease_ttl:
        try:
            value = float(lease_ttl)
        except ValueError as exc:
            raise ValueError("LOGAI_LEASE_TTL_S must be a number") from exc
        if value < 1:
            raise ValueError("LOGAI_LEASE_TTL_S must be >= 1")
        overrides["lease_ttl_s"] = value

    redact = os.getenv("LOGAI_AI_REDACT")
    if redact:
        overrides["redact"] = redact.strip().lower() not in ("0", "false", "no", "off")

    if not overrides:
        return cfg
    return replace(cfg, **overrides)
