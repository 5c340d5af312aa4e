"""Competitive-intelligence integration core."""

from __future__ import annotations

from .config import Settings
from .errors import ErrorCode, IntegrationError
from .store import ExpiringStore

__all__ = [
    "Settings",
    "ErrorCode",
    "IntegrationError",
    "ExpiringStore",
    "EmbeddingService",
    "EmbeddingBackend",
    "KnowledgeBase",
    "WorkflowClient",
    "JobStatusTracker",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"EmbeddingService", "EmbeddingBackend"}:
        from .embeddings import EmbeddingBackend, EmbeddingService

        return {"EmbeddingService": EmbeddingService, "EmbeddingBackend": EmbeddingBackend}[name]
    if name == "KnowledgeBase":
        from .knowledge_base import KnowledgeBase

        return KnowledgeBase
    if name == "WorkflowClient":
        from .webhooks import WorkflowClient

        return WorkflowClient
    if name == "JobStatusTracker":
        from .jobs import JobStatusTracker

        return JobStatusTracker
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'compintel' has no attribute {name}")
