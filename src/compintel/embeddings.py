"""Embedding generation with a TTL cache and bounded retry against the provider."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Awaitable, Callable, List

import httpx
from openai import AsyncOpenAI

from .config import Settings
from .errors import ConfigurationError, ExternalAPIError, ValidationError
from .observability import MetricsRecorder
from .store import Clock, ExpiringStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_HEALTH_PROBE_TEXT = "health check"


class EmbeddingBackend(Enum):
    """Supported embedding providers."""

    OPENAI = auto()
    VLLM = auto()


class EmbeddingCache:
    """Process-lifetime cache of query vectors keyed by a digest of the input text."""

    def __init__(self, *, ttl: float, model: str, clock: Clock = time.monotonic) -> None:
        self._model = model
        self._store: ExpiringStore[str, List[float]] = ExpiringStore(default_ttl=ttl, clock=clock)

    def key_for(self, text: str) -> str:
        digest = hashlib.sha256(f"{self._model}\n{text.strip()}".encode("utf-8"))
        return digest.hexdigest()

    def get(self, text: str) -> List[float] | None:
        vector = self._store.get(self.key_for(text))
        return list(vector) if vector is not None else None

    def put(self, text: str, vector: Sequence[float]) -> None:
        self._store.set(self.key_for(text), list(vector))

    def sweep(self) -> int:
        return self._store.sweep()

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class EmbeddingService:
    """Turn free text into vectors, consulting the cache before calling the provider.

    Each provider call is bounded by ``settings.embedding_timeout``. Failed calls
    are retried ``settings.embedding_max_retries`` times with exponential backoff
    (``backoff_base * 2**n`` seconds) before :class:`ExternalAPIError` is raised.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: EmbeddingCache | None = None,
        metrics: MetricsRecorder | None = None,
        openai_client: AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._settings = settings
        self._backend = EmbeddingBackend.VLLM if settings.is_vllm_embedding_backend else EmbeddingBackend.OPENAI
        self._model = settings.embedding_model_name
        self._dimension = settings.embedding_dimensions
        self._timeout = settings.embedding_timeout
        self._max_retries = max(0, settings.embedding_max_retries)
        self._backoff_base = max(0.0, settings.embedding_backoff_base)
        self._max_chars = settings.embedding_max_chars
        self._batch_size = max(1, settings.embedding_batch_size)
        self._batch_delay = max(0.0, settings.embedding_batch_delay)
        self._cache = cache or EmbeddingCache(ttl=settings.embedding_cache_ttl, model=self._model, clock=clock)
        self._metrics = metrics
        self._sleep = sleep
        self._openai_client: AsyncOpenAI | None = None
        self._http_client: httpx.AsyncClient | None = None

        if self._backend is EmbeddingBackend.OPENAI:
            self._openai_client = openai_client or self._build_openai_client()
        else:
            self._http_client = http_client or self._build_http_client()

    @classmethod
    def from_env(cls, **kwargs) -> "EmbeddingService":
        """Create the embedding service from environment configuration."""

        return cls(Settings.from_env(), **kwargs)

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_identifier(self) -> str:
        return self._model

    @property
    def max_attempts(self) -> int:
        return self._max_retries + 1

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def get_embedding(self, text: str) -> List[float]:
        """Return the vector for ``text``, from cache when a fresh entry exists."""

        self._validate(text)
        normalized = text.strip()

        cached = self._cache.get(normalized)
        if cached is not None:
            logger.info("embedding.cache.hit text_length=%s", len(normalized))
            if self._metrics:
                self._metrics.increment("embedding.cache.hit", model=self._model)
            return cached

        if self._metrics:
            self._metrics.increment("embedding.cache.miss", model=self._model)

        vector = await self._request_with_retry(normalized)
        self._cache.put(normalized, vector)
        return vector

    async def get_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` in fixed-size batches, aborting on the first failed batch."""

        if not texts:
            return []
        for text in texts:
            self._validate(text)

        results: list[list[float]] = []
        for offset in range(0, len(texts), self._batch_size):
            batch = list(texts[offset : offset + self._batch_size])
            unique = list(dict.fromkeys(batch))
            tasks = [asyncio.ensure_future(self.get_embedding(text)) for text in unique]
            try:
                embedded = dict(zip(unique, await asyncio.gather(*tasks)))
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                logger.error(
                    "embedding.batch.failed offset=%s batch_size=%s remaining=%s",
                    offset,
                    len(batch),
                    len(texts) - offset,
                )
                raise
            results.extend(list(embedded[text]) for text in batch)

            if offset + self._batch_size < len(texts) and self._batch_delay > 0:
                await self._sleep(self._batch_delay)

        return results

    def sweep_cache(self) -> int:
        removed = self._cache.sweep()
        if removed:
            logger.info("embedding.cache.sweep removed=%s", removed)
        return removed

    async def health_check(self) -> dict:
        """Issue a single uncached probe; never raises."""

        healthy = True
        try:
            await asyncio.wait_for(self._request(_HEALTH_PROBE_TEXT), timeout=self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("embedding.health.failed error=%s", exc)
            healthy = False
        return {"healthy": healthy, "timestamp": datetime.now(timezone.utc).isoformat()}

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        if self._openai_client is not None:
            await self._openai_client.close()
            self._openai_client = None

    # Internal helpers -------------------------------------------------

    def _validate(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Text cannot be empty")
        if len(text) > self._max_chars:
            raise ValidationError(
                f"Text too long for embedding (max {self._max_chars} characters)",
                details={"length": len(text), "max_length": self._max_chars},
            )

    async def _request_with_retry(self, text: str) -> List[float]:
        attempts = self.max_attempts
        last_error: BaseException | None = None

        for attempt in range(attempts):
            start = time.perf_counter()
            try:
                vector = await asyncio.wait_for(self._request(text), timeout=self._timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                reason = "timeout" if isinstance(exc, asyncio.TimeoutError) else str(exc)
                logger.warning(
                    "embedding.request.failed attempt=%s/%s error=%s",
                    attempt + 1,
                    attempts,
                    reason,
                )
                if self._metrics:
                    self._metrics.record_timing(
                        "embedding.request", time.perf_counter() - start, outcome="error"
                    )
                if attempt < attempts - 1:
                    if self._metrics:
                        self._metrics.increment("embedding.retry", model=self._model)
                    await self._sleep(self._backoff_base * (2**attempt))
                continue

            if self._metrics:
                self._metrics.record_timing(
                    "embedding.request", time.perf_counter() - start, outcome="success"
                )
            logger.info(
                "embedding.request.success attempt=%s text_length=%s",
                attempt + 1,
                len(text),
            )
            return vector

        message = "timeout" if isinstance(last_error, asyncio.TimeoutError) else str(last_error)
        raise ExternalAPIError(
            f"Embedding provider failed after {attempts} attempts",
            details={"attempts": attempts, "error": message},
        ) from last_error

    async def _request(self, text: str) -> List[float]:
        if self._backend is EmbeddingBackend.OPENAI:
            vector = await self._openai_embed(text)
        else:
            vector = await self._vllm_embed(text)

        if len(vector) != self._dimension:
            msg = f"Embedding dimension {len(vector)} does not match configured {self._dimension}."
            raise RuntimeError(msg)
        return vector

    async def _openai_embed(self, text: str) -> List[float]:
        assert self._openai_client is not None  # for type checkers
        response = await self._openai_client.embeddings.create(
            model=self._model,
            input=text,
            dimensions=self._dimension,
        )
        if not response.data:
            raise RuntimeError("No embedding returned from OpenAI API")
        return [float(value) for value in response.data[0].embedding]

    async def _vllm_embed(self, text: str) -> List[float]:
        assert self._http_client is not None  # for type checkers
        response = await self._http_client.post(
            self._settings.embedding_endpoint,
            json={"model": self._model, "input": [text]},
        )
        response.raise_for_status()
        items = response.json().get("data")
        if not isinstance(items, list) or not items:
            raise RuntimeError("Embedding response did not include embedding data.")
        embedding = items[0].get("embedding")
        if embedding is None:
            raise RuntimeError("Embedding response item missing 'embedding'.")
        return [float(value) for value in embedding]

    def _build_openai_client(self) -> AsyncOpenAI:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY must be set when using the OpenAI embedding backend.")
        # Retries are owned by this service so the attempt budget stays exact.
        return AsyncOpenAI(api_key=api_key, max_retries=0, timeout=self._timeout)

    def _build_http_client(self) -> httpx.AsyncClient:
        headers = {}
        if self._settings.embedding_api_key:
            headers["Authorization"] = f"Bearer {self._settings.embedding_api_key}"
        return httpx.AsyncClient(timeout=self._timeout, headers=headers or None)


__all__ = ["EmbeddingBackend", "EmbeddingCache", "EmbeddingService"]
