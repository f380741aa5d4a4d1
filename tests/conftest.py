from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import BaseModel

from logai_triage_server.core.analysis import AnalysisConfig, ModelReply
from logai_triage_server.core.config import TriageConfig
from logai_triage_server.core.models import Application, LogEvent, LogLevel
from logai_triage_server.core.sources import StoreLogSource
from logai_triage_server.core.store import MemoryStore
from logai_triage_server.tools.triage import TriageServices

NOW = datetime(2025, 12, 30, 12, 0, 0, tzinfo=UTC)

_ENV_VARS = (
    "LOGAI_DATABASE_URL",
    "LOGAI_LOG_DIR",
    "LOGAI_MAX_EVENTS",
    "LOGAI_MAX_LOOKBACK_HOURS",
    "LOGAI_UPSERT_CONCURRENCY",
    "LOGAI_MAX_RETRIES",
    "LOGAI_LEASE_TTL_S",
    "LOGAI_SEVERITY_CONFIG",
    "LOGAI_DANGEROUS_EXCEPTIONS",
    "LOGAI_AI_MODEL",
    "LOGAI_AI_TIMEOUT_S",
    "LOGAI_AI_MAX_RETRIES",
    "LOGAI_AI_REDACT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def java_trace(exc: str, message: str, frames: list[str]) -> str:
    head = f"{exc}: {message}" if message else exc
    return "\n".join([head, *[f"\tat {f}" for f in frames]])


ORDER_FRAMES = [
    "com.acme.orders.OrderService.place(OrderService.java:42)",
    "org.springframework.web.servlet.FrameworkServlet.service(FrameworkServlet.java:897)",
]
PAYMENT_FRAMES = [
    "com.acme.payments.PaymentClient.charge(PaymentClient.java:88)",
    "com.acme.orders.OrderService.pay(OrderService.java:61)",
]


@pytest.fixture
def make_error() -> Callable[..., LogEvent]:
    def _make(
        message: str = "Order 1234 not found",
        *,
        exc: str = "java.lang.IllegalStateException",
        frames: list[str] | None = None,
        at: datetime | None = None,
        level: LogLevel = LogLevel.ERROR,
    ) -> LogEvent:
        return LogEvent(
            timestamp=at or NOW - timedelta(hours=1),
            level=level,
            message=message,
            logger="com.acme.orders.OrderService",
            stack_trace=java_trace(exc, message, frames or ORDER_FRAMES),
        )

    return _make


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def app(store: MemoryStore) -> Application:
    return store.create_application("orders", "Order service")


class FakeReasoningClient:
    """Returns queued replies per schema and records prompts."""

    def __init__(self) -> None:
        self.replies: dict[type[BaseModel], list[BaseModel | Exception]] = {}
        self.prompts: list[str] = []
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    def queue(self, reply: BaseModel | Exception, schema: type[BaseModel] | None = None) -> None:
        key = schema or type(reply)
        self.replies.setdefault(key, []).append(reply)

    async def complete_json(self, prompt, schema_model):
        self.calls += 1
        self.prompts.append(prompt)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        queued = self.replies.get(schema_model) or []
        if not queued:
            raise AssertionError(f"no reply queued for {schema_model.__name__}")
        reply = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(reply, Exception):
            raise reply
        return ModelReply(
            parsed=reply,
            raw_text=reply.model_dump_json(),
            model="fake-model",
            tokens_used=321,
        )


@pytest.fixture
def fake_client() -> FakeReasoningClient:
    return FakeReasoningClient()


@pytest.fixture
def analysis_cfg() -> AnalysisConfig:
    return AnalysisConfig(max_retries=2, retry_base_delay=0.0)


@pytest.fixture
def triage_cfg() -> TriageConfig:
    return TriageConfig(max_retries=2, retry_base_delay=0.0)


@pytest.fixture
def services(
    store: MemoryStore,
    fake_client: FakeReasoningClient,
    triage_cfg: TriageConfig,
    analysis_cfg: AnalysisConfig,
) -> TriageServices:
    return TriageServices(
        store=store,
        source=StoreLogSource(store),
        client=fake_client,
        cfg=triage_cfg,
        analysis_cfg=analysis_cfg,
    )


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_payment_error(make_error: Callable[..., LogEvent]) -> Callable[..., LogEvent]:
    def _make(message: str = "Card declined for payment 17", **kwargs) -> LogEvent:
        kwargs.setdefault("exc", "com.acme.payments.CardDeclinedException")
        kwargs.setdefault("frames", PAYMENT_FRAMES)
        return make_error(message, **kwargs)

    return _make
