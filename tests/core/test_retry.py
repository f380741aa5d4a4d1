from __future__ import annotations

import pytest

from logai_triage_server.core.errors import NotFoundError, UpstreamUnavailableError
from logai_triage_server.core.retry import acall_with_retries, backoff_delay, call_with_retries


def test_backoff_delay_is_exponential_and_capped() -> None:
    assert [backoff_delay(a, base=1.0) for a in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert backoff_delay(3, base=0.0) == 0.0


def test_call_with_retries_eventually_succeeds() -> None:
    attempts = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError("flaky")
        return "ok"

    assert call_with_retries(flaky, what="op", max_attempts=3, base_delay=0.0) == "ok"
    assert len(attempts) == 3


def test_call_with_retries_does_not_retry_domain_errors() -> None:
    attempts = []

    def missing() -> None:
        attempts.append(1)
        raise NotFoundError("gone")

    with pytest.raises(NotFoundError):
        call_with_retries(missing, what="op", max_attempts=3, base_delay=0.0)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_acall_with_retries_preserves_last_message() -> None:
    async def down() -> None:
        raise ConnectionRefusedError("connection refused")

    with pytest.raises(UpstreamUnavailableError) as exc_info:
        await acall_with_retries(down, what="Log fetch", max_attempts=2, base_delay=0.0)
    assert str(exc_info.value) == "Log fetch failed after 2 attempts: connection refused"
    assert exc_info.value.code == "upstream_unavailable"
