"""Competitive search: free-text query to ranked knowledge-base chunks."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Mapping

from .embeddings import EmbeddingService
from .errors import ExternalAPIError, IntegrationError, ValidationError
from .knowledge_base import (
    DEFAULT_THRESHOLD,
    MAX_LIMIT,
    MAX_QUERY_LENGTH,
    KnowledgeBase,
    SearchQuery,
)
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

_CAPABILITIES = [
    "text-embedding",
    "semantic-search",
    "competitor-filtering",
    "vertical-filtering",
]


class CompetitiveSearchService:
    def __init__(
        self,
        embedding_service: EmbeddingService,
        knowledge_base: KnowledgeBase,
        *,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._embeddings = embedding_service
        self._knowledge_base = knowledge_base
        self._metrics = metrics

    async def search(self, request: Mapping[str, Any] | SearchQuery) -> dict[str, Any]:
        """Validate, embed and search, returning the response body for the caller."""

        start = time.perf_counter()
        query = request if isinstance(request, SearchQuery) else SearchQuery.from_mapping(request)

        try:
            vector = await self._embeddings.get_embedding(query.query)
        except ValidationError:
            raise
        except IntegrationError as exc:
            logger.warning("search.embedding.failed error=%s", exc.message)
            raise ExternalAPIError(
                "Failed to generate embedding for search query",
                details={"embeddingError": exc.message, **(exc.details or {})},
            ) from exc

        results = await self._knowledge_base.search(
            vector,
            threshold=query.threshold,
            limit=query.limit,
            competitor=query.competitor,
            verticals=query.verticals,
        )

        elapsed = time.perf_counter() - start
        processing_ms = int(round(elapsed * 1000))
        filters = query.filters
        logger.info(
            "search.completed results=%s processing_ms=%s competitor=%s verticals=%s",
            len(results),
            processing_ms,
            query.competitor,
            ",".join(query.verticals) or None,
        )
        if self._metrics:
            self._metrics.record_timing("search.request", elapsed)
            self._metrics.set_gauge("search.results", float(len(results)))

        metadata: dict[str, Any] = {
            "totalResults": len(results),
            "processingTimeMs": processing_ms,
            "threshold": query.threshold,
        }
        if filters:
            metadata["filters"] = filters
        return {
            "success": True,
            "query": query.query,
            "results": [result.to_dict() for result in results],
            "metadata": metadata,
        }

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "service": "competitive-search",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "capabilities": list(_CAPABILITIES),
        }

    def stats(self) -> dict[str, Any]:
        return {
            "service": "competitive-search",
            "features": {
                "embeddingModel": self._embeddings.model_identifier,
                "embeddingDimensions": self._embeddings.dimension,
                "maxQueryLength": MAX_QUERY_LENGTH,
                "maxResults": MAX_LIMIT,
                "defaultThreshold": DEFAULT_THRESHOLD,
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


__all__ = ["CompetitiveSearchService"]
