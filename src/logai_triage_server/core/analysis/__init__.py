"""Analysis and patch workflows."""

from __future__ import annotations

from .client import GeminiReasoningClient, ReasoningClient
from .models import (
    AnalysisConfig,
    AnalysisFindings,
    ModelReply,
    PatchProposal,
    resolve_analysis_config,
)
from .patch import generate_patch, is_valid_diff
from .service import analyze_cluster

__all__ = [
    "AnalysisConfig",
    "AnalysisFindings",
    "GeminiReasoningClient",
    "ModelReply",
    "PatchProposal",
    "ReasoningClient",
    "analyze_cluster",
    "generate_patch",
    "is_valid_diff",
    "resolve_analysis_config",
]
