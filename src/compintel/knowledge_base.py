"""Knowledge-base similarity search backed by Qdrant."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, List, Mapping, Sequence

from qdrant_client import QdrantClient, models

from .config import Settings
from .errors import DatabaseError, DeadlineExceededError, ValidationError

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 500
MIN_LIMIT = 1
MAX_LIMIT = 100
DEFAULT_LIMIT = 10
DEFAULT_THRESHOLD = 0.7


@dataclass(slots=True)
class SearchQuery:
    """Validated search request; constructed per call and never persisted."""

    query: str
    competitor: str | None = None
    verticals: list[str] = field(default_factory=list)
    limit: int = DEFAULT_LIMIT
    threshold: float = DEFAULT_THRESHOLD

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SearchQuery":
        """Build a query from a decoded request body, raising ``ValidationError`` on bad input."""

        if not isinstance(data, Mapping):
            raise ValidationError("Request body must be a JSON object")

        query = data.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query is required and must be a non-empty string")
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError(f"Query must be {MAX_QUERY_LENGTH} characters or less")

        competitor = data.get("competitor")
        if competitor is not None and not isinstance(competitor, str):
            raise ValidationError("competitor must be a string")
        competitor = (competitor or "").strip() or None

        verticals = data.get("verticals")
        if verticals is None:
            verticals = []
        if not isinstance(verticals, list) or not all(isinstance(item, str) for item in verticals):
            raise ValidationError("verticals must be a list of strings")
        verticals = [item.strip() for item in verticals if item.strip()]

        limit = data.get("limit", DEFAULT_LIMIT)
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("Limit must be an integer")
        if limit < MIN_LIMIT or limit > MAX_LIMIT:
            raise ValidationError(f"Limit must be between {MIN_LIMIT} and {MAX_LIMIT}")

        threshold = data.get("threshold", DEFAULT_THRESHOLD)
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ValidationError("Threshold must be a number")
        if threshold < 0 or threshold > 1:
            raise ValidationError("Threshold must be between 0 and 1")

        return cls(
            query=query.strip(),
            competitor=competitor,
            verticals=verticals,
            limit=limit,
            threshold=float(threshold),
        )

    @property
    def filters(self) -> dict[str, Any] | None:
        filters: dict[str, Any] = {}
        if self.competitor:
            filters["competitor"] = self.competitor
        if self.verticals:
            filters["verticals"] = list(self.verticals)
        return filters or None


@dataclass(slots=True)
class SearchResult:
    """A matching chunk with its similarity score and originating source."""

    chunk_id: int | str
    source_id: str | None
    title: str | None
    content: str
    competitor: str | None
    verticals: list[str]
    similarity: float
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class KnowledgeChunk:
    """A content fragment to be indexed in the knowledge base."""

    id: int | str
    vector: Sequence[float]
    content: str
    source_id: str | None = None
    title: str | None = None
    competitor: str | None = None
    verticals: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "source_id": self.source_id,
            "title": self.title,
            "competitor": self.competitor,
            "verticals": list(self.verticals),
            "metadata": dict(self.metadata),
        }


class KnowledgeBase:
    """Nearest-neighbour search over knowledge chunks with threshold and tag filters.

    Backend failures are reported as :class:`DatabaseError` and are not retried
    here; retry policy, if any, belongs to the caller.
    """

    def __init__(
        self,
        client: QdrantClient,
        collection_name: str,
        *,
        vector_size: int,
        distance: models.Distance = models.Distance.COSINE,
        timeout: float | None = None,
    ) -> None:
        if vector_size <= 0:
            msg = "vector_size must be a positive integer"
            raise ValueError(msg)

        self._client = client
        self._collection_name = collection_name
        self._vector_size = vector_size
        self._distance = distance
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "KnowledgeBase":
        """Instantiate the knowledge base using application settings."""

        client = QdrantClient(
            **settings.qdrant_client_kwargs(),
            timeout=max(1, int(settings.search_timeout)),
        )
        return cls(
            client,
            settings.qdrant_collection,
            vector_size=settings.embedding_dimensions,
            timeout=settings.search_timeout,
        )

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def vector_size(self) -> int:
        return self._vector_size

    def ensure_collection(self) -> None:
        """Create the collection when missing, recreating it on a dimension mismatch."""

        if not self._client.collection_exists(self._collection_name):
            self._create_collection()
            return

        info = self._client.get_collection(self._collection_name)
        existing_size = info.config.params.vectors.size
        if existing_size != self._vector_size:
            logger.warning(
                (
                    "knowledge_base.collection.recreate name=%s existing_size=%s expected_size=%s "
                    "(stored vectors will be lost)"
                ),
                self._collection_name,
                existing_size,
                self._vector_size,
            )
            self._client.delete_collection(self._collection_name)
            self._create_collection()

    def ensure_payload_indexes(self) -> None:
        """Index the payload fields that search filters on."""

        for field_name in ("competitor", "verticals", "source_id"):
            try:
                self._client.create_payload_index(
                    collection_name=self._collection_name,
                    field_name=field_name,
                    field_schema=models.PayloadSchemaType.KEYWORD,
                )
            except Exception as exc:  # pragma: no cover - already exists
                if "exists" in str(exc).lower():
                    continue
                logger.warning(
                    "knowledge_base.index.failed field=%s collection=%s error=%s",
                    field_name,
                    self._collection_name,
                    exc,
                )

    def upsert(self, chunks: Sequence[KnowledgeChunk], *, wait: bool = True) -> None:
        """Insert or update chunks in the collection."""

        if not chunks:
            return

        points: list[models.PointStruct] = []
        for chunk in chunks:
            vector = [float(value) for value in chunk.vector]
            if len(vector) != self._vector_size:
                msg = (
                    f"Vector for chunk {chunk.id!r} has length {len(vector)}, "
                    f"expected {self._vector_size}."
                )
                raise ValueError(msg)
            points.append(models.PointStruct(id=chunk.id, vector=vector, payload=chunk.payload()))

        self._client.upsert(collection_name=self._collection_name, points=points, wait=wait)

    async def search(
        self,
        vector: Sequence[float],
        *,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
        competitor: str | None = None,
        verticals: Iterable[str] | None = None,
    ) -> List[SearchResult]:
        """Return up to ``limit`` chunks scoring at least ``threshold``, best first."""

        query_vector = [float(value) for value in vector]
        if len(query_vector) != self._vector_size:
            msg = f"Query vector has length {len(query_vector)}, expected {self._vector_size}."
            raise ValidationError(msg)

        query_filter = self._build_filter(competitor, list(verticals or []))
        call = asyncio.to_thread(self._query, query_vector, threshold, limit, query_filter)
        try:
            if self._timeout is not None:
                points = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                points = await call
        except asyncio.TimeoutError as exc:
            logger.error("knowledge_base.search.timeout timeout=%s", self._timeout)
            raise DeadlineExceededError(
                "Knowledge base search timed out",
                details={"timeout": self._timeout},
            ) from exc
        except Exception as exc:
            logger.error("knowledge_base.search.failed error=%s", exc)
            raise DatabaseError(
                "Failed to search knowledge base",
                details={"searchError": str(exc)},
            ) from exc

        results: list[SearchResult] = []
        for point in points:
            # Keep the backend's ordering; only clip what it should not have returned.
            if point.score < threshold:
                continue
            results.append(self._to_result(point))
            if len(results) >= limit:
                break
        return results

    def count(self) -> int:
        return self._client.count(self._collection_name).count

    def delete_source(self, source_id: str) -> models.UpdateResult:
        """Remove every chunk that belongs to ``source_id``."""

        return self._client.delete(
            collection_name=self._collection_name,
            points_selector=models.FilterSelector(
                filter=models.Filter(
                    must=[models.FieldCondition(key="source_id", match=models.MatchValue(value=source_id))]
                )
            ),
        )

    # Internal helpers -------------------------------------------------

    def _query(
        self,
        vector: list[float],
        threshold: float,
        limit: int,
        query_filter: models.Filter | None,
    ) -> list[models.ScoredPoint]:
        extra: dict[str, int] = {}
        if self._timeout is not None:
            # wait_for cannot stop the worker thread; the server-side limit ends the call.
            extra["timeout"] = max(1, math.ceil(self._timeout))
        response = self._client.query_points(
            collection_name=self._collection_name,
            query=vector,
            query_filter=query_filter,
            limit=limit,
            score_threshold=threshold,
            with_payload=True,
            **extra,
        )
        return list(response.points)

    @staticmethod
    def _build_filter(competitor: str | None, verticals: list[str]) -> models.Filter | None:
        conditions: list[models.Condition] = []
        if competitor:
            conditions.append(
                models.FieldCondition(key="competitor", match=models.MatchValue(value=competitor))
            )
        if verticals:
            conditions.append(models.FieldCondition(key="verticals", match=models.MatchAny(any=verticals)))
        if not conditions:
            return None
        return models.Filter(must=conditions)

    @staticmethod
    def _to_result(point: models.ScoredPoint) -> SearchResult:
        payload = dict(point.payload or {})
        return SearchResult(
            chunk_id=point.id,
            source_id=payload.get("source_id"),
            title=payload.get("title"),
            content=payload.get("content") or "",
            competitor=payload.get("competitor"),
            verticals=list(payload.get("verticals") or []),
            similarity=float(point.score),
            metadata=dict(payload.get("metadata") or {}),
        )

    def _create_collection(self) -> None:
        self._client.create_collection(
            collection_name=self._collection_name,
            vectors_config=models.VectorParams(size=self._vector_size, distance=self._distance),
        )


__all__ = [
    "KnowledgeBase",
    "KnowledgeChunk",
    "SearchQuery",
    "SearchResult",
    "MAX_QUERY_LENGTH",
    "MAX_LIMIT",
    "DEFAULT_LIMIT",
    "DEFAULT_THRESHOLD",
]
