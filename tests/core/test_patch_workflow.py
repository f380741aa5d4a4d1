from __future__ import annotations

from dataclasses import replace

import pytest

from logai_triage_server.core.analysis import (
    AnalysisFindings,
    PatchProposal,
    analyze_cluster,
    generate_patch,
    is_valid_diff,
)
from logai_triage_server.core.analysis.patch import strip_code_fences
from logai_triage_server.core.clusters import ClusterCandidate
from logai_triage_server.core.config import SeverityConfig
from logai_triage_server.core.errors import (
    InvalidArtifactError,
    NotFoundError,
    PreconditionFailedError,
)

GOOD_DIFF = "--- a/X\n+++ b/X\n@@ -1 +1 @@\n-old\n+new\n"
FINDINGS = AnalysisFindings(
    explanation="e", root_cause="null order", recommendation="guard", confidence="MEDIUM"
)


@pytest.fixture
def cluster_id(store, app, now) -> str:
    candidate = ClusterCandidate(
        fingerprint="e" * 32,
        exception_class="java.lang.NullPointerException",
        message_pattern="order is null",
        primary_file="OrderService.java",
        primary_class="com.acme.orders.OrderService",
        primary_method="place",
        primary_line=42,
    )
    return store.upsert_cluster(app.id, candidate, now, severity_cfg=SeverityConfig()).cluster.id


def test_diff_grammar_examples() -> None:
    assert is_valid_diff(GOOD_DIFF)
    assert not is_valid_diff("no diff here")


@pytest.mark.parametrize(
    "text",
    [
        "--- a/X\n+++ b/X\n@@ -1,2 +1 @@\n keep\n--- old\n",  # removes "-- old"
        "--- a/X\n+++ b/X\n@@ -1 +1,2 @@\n keep\n+++ new\n",  # adds "++ new"
        "--- a/X\n+++ b/X\n@@ -1 +1 @@\n-x\n+y\n--- a/Y\n+++ b/Y\n@@ -2 +2 @@\n-p\n+q\n",
    ],
)
def test_diff_grammar_reads_dash_lines_inside_hunks(text: str) -> None:
    assert is_valid_diff(text)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   \n",
        "+++ b/X\n@@ -1 +1 @@\n-old\n+new\n",  # no --- header
        "--- a/X\n+++ b/X\n-old\n+new\n",  # no hunk
        "--- a/X\n+++ b/X\n@@ -1 +1 @@\n context\n",  # no change lines
        "--- a/X\n@@ -1 +1 @@\n context\n+++ b/X\n",  # +++ only inside the hunk
    ],
)
def test_diff_grammar_rejects(text: str) -> None:
    assert not is_valid_diff(text)


def test_strip_code_fences() -> None:
    assert strip_code_fences(f"```diff\n{GOOD_DIFF}```") == GOOD_DIFF.rstrip("\n")
    assert strip_code_fences(GOOD_DIFF) == GOOD_DIFF


@pytest.mark.asyncio
async def test_patch_requires_prior_analysis(store, cluster_id, fake_client, analysis_cfg) -> None:
    fake_client.queue(PatchProposal(diff=GOOD_DIFF, file_name="X"))

    with pytest.raises(PreconditionFailedError, match="analyze before patching"):
        await generate_patch(cluster_id, store=store, client=fake_client, cfg=analysis_cfg)

    assert fake_client.calls == 0
    assert store.list_analyses(cluster_id) == []


@pytest.mark.asyncio
async def test_patch_unknown_cluster(store, fake_client, analysis_cfg) -> None:
    with pytest.raises(NotFoundError):
        await generate_patch("missing", store=store, client=fake_client, cfg=analysis_cfg)


@pytest.mark.asyncio
async def test_patch_attached_to_current_analysis(
    store, cluster_id, fake_client, analysis_cfg
) -> None:
    fake_client.queue(FINDINGS)
    fake_client.queue(PatchProposal(diff=f"```diff\n{GOOD_DIFF}```", file_name=None))
    analysis = await analyze_cluster(cluster_id, store=store, client=fake_client, cfg=analysis_cfg)

    result = await generate_patch(
        cluster_id,
        "class OrderService {}",
        store=store,
        client=fake_client,
        cfg=analysis_cfg,
    )

    assert result.id == analysis.id
    assert result.patch == GOOD_DIFF
    assert result.patch_file_name == "X"
    assert store.latest_analysis(cluster_id).patch == GOOD_DIFF
    assert "class OrderService {}" in fake_client.prompts[-1]
    assert "null order" in fake_client.prompts[-1]


@pytest.mark.asyncio
async def test_patch_file_name_falls_back_to_cluster_file(
    store, cluster_id, fake_client, analysis_cfg
) -> None:
    fake_client.queue(FINDINGS)
    fake_client.queue(
        PatchProposal(diff="--- /dev/null\n+++ /dev/null\n@@ -1 +1 @@\n-a\n+b\n", file_name=" ")
    )
    await analyze_cluster(cluster_id, store=store, client=fake_client, cfg=analysis_cfg)

    result = await generate_patch(cluster_id, store=store, client=fake_client, cfg=analysis_cfg)
    assert result.patch_file_name == "OrderService.java"


@pytest.mark.asyncio
async def test_invalid_patch_keeps_analysis(store, cluster_id, fake_client, analysis_cfg) -> None:
    fake_client.queue(FINDINGS)
    fake_client.queue(PatchProposal(diff="Sorry, I cannot produce a patch.", file_name="X"))
    analysis = await analyze_cluster(cluster_id, store=store, client=fake_client, cfg=analysis_cfg)

    with pytest.raises(InvalidArtifactError):
        await generate_patch(cluster_id, store=store, client=fake_client, cfg=analysis_cfg)

    current = store.latest_analysis(cluster_id)
    assert current.id == analysis.id
    assert current.root_cause == "null order"
    assert current.patch is None


@pytest.mark.asyncio
async def test_source_code_is_truncated(store, cluster_id, fake_client, analysis_cfg) -> None:
    cfg = replace(analysis_cfg, max_source_chars=10)
    fake_client.queue(FINDINGS)
    fake_client.queue(PatchProposal(diff=GOOD_DIFF, file_name="X"))
    await analyze_cluster(cluster_id, store=store, client=fake_client, cfg=cfg)

    await generate_patch(cluster_id, "A" * 50, store=store, client=fake_client, cfg=cfg)
    assert "A" * 10 in fake_client.prompts[-1]
    assert "A" * 11 not in fake_client.prompts[-1]
