from __future__ import annotations

import logging
import types
from typing import Any, Callable

import pytest

from compintel.config import Settings


def vector_for(text: str) -> list[float]:
    lowered = text.lower()
    if "alpha" in lowered:
        return [1.0, 0.0, 0.0]
    if "beta" in lowered:
        return [0.0, 1.0, 0.0]
    return [0.0, 0.0, 1.0]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _StubEmbeddings:
    def __init__(self, client: "StubAsyncOpenAI") -> None:
        self._client = client

    async def create(self, *, model: str, input: str, dimensions: int) -> Any:  # noqa: A002
        self._client.calls.append({"model": model, "input": input, "dimensions": dimensions})
        if self._client.failures:
            failure = self._client.failures.pop(0)
            if isinstance(failure, BaseException):
                raise failure
            return await failure()
        vector = self._client.vector_fn(input)
        return types.SimpleNamespace(data=[types.SimpleNamespace(embedding=vector)])


class StubAsyncOpenAI:
    """Minimal stand-in for ``openai.AsyncOpenAI`` covering ``embeddings.create``."""

    def __init__(self, vector_fn: Callable[[str], list[float]] = vector_for) -> None:
        self.vector_fn = vector_fn
        self.calls: list[dict[str, Any]] = []
        # Each entry is consumed by one call: an exception to raise or an awaitable factory.
        self.failures: list[Any] = []
        self.embeddings = _StubEmbeddings(self)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        openai_api_key="sk-test",
        embedding_dimensions=3,
        embedding_timeout=1.0,
        embedding_backoff_base=0.5,
        workflow_base_url="https://workflows.example.com/webhook",
        workflow_retry_delay=0.0,
        job_store_path=None,
        observability_metrics_enabled=False,
    )


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def openai_stub() -> StubAsyncOpenAI:
    return StubAsyncOpenAI()


@pytest.fixture(autouse=True)
def _propagate_compintel_logs():
    # create_app detaches the package logger from the root handlers caplog relies on.
    logging.getLogger("compintel").propagate = True
    yield
