"""Configuration helpers for the competitive-intelligence integration layer."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

load_dotenv()

_DEFAULT_EMBEDDING_MODEL: Final[str] = "text-embedding-3-small"
_DEFAULT_EMBEDDING_DIMENSIONS: Final[int] = 1536
_DEFAULT_EMBEDDING_BASE_URL: Final[str] = "http://localhost:8000"
_DEFAULT_EMBEDDING_TIMEOUT: Final[float] = 30.0
_DEFAULT_EMBEDDING_MAX_RETRIES: Final[int] = 2
_DEFAULT_EMBEDDING_BACKOFF_BASE: Final[float] = 1.0
_DEFAULT_EMBEDDING_CACHE_TTL: Final[float] = 24 * 60 * 60
_DEFAULT_EMBEDDING_MAX_CHARS: Final[int] = 8000
_DEFAULT_EMBEDDING_BATCH_SIZE: Final[int] = 100
_DEFAULT_EMBEDDING_BATCH_DELAY: Final[float] = 0.1
_DEFAULT_QDRANT_URL: Final[str] = "http://localhost:6333"
_DEFAULT_QDRANT_COLLECTION: Final[str] = "kb_chunks"
_DEFAULT_SEARCH_TIMEOUT: Final[float] = 10.0
_DEFAULT_WORKFLOW_TIMEOUT: Final[float] = 30.0
_DEFAULT_WORKFLOW_RETRIES: Final[int] = 2
_DEFAULT_WORKFLOW_RETRY_DELAY: Final[float] = 1.0
_DEFAULT_WORKFLOW_HEALTH_TIMEOUT: Final[float] = 5.0
_DEFAULT_UPLOAD_TIMEOUT: Final[float] = 60.0
_DEFAULT_UPLOAD_RETRIES: Final[int] = 1
_DEFAULT_UPLOAD_MAX_BYTES: Final[int] = 10 * 1024 * 1024
_DEFAULT_JOB_COMPLETED_RETENTION: Final[float] = 5 * 60
_DEFAULT_JOB_FAILED_RETENTION: Final[float] = 10 * 60
_DEFAULT_JOB_STORE_PATH: Final[str] = "data/jobs.sqlite"
_DEFAULT_MAINTENANCE_INTERVAL: Final[float] = 60 * 60


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _env_optional_str(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    return value or None


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    openai_api_key: str | None = None
    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    embedding_dimensions: int = _DEFAULT_EMBEDDING_DIMENSIONS
    embedding_base_url: str = _DEFAULT_EMBEDDING_BASE_URL
    embedding_api_key: str | None = None
    embedding_timeout: float = _DEFAULT_EMBEDDING_TIMEOUT
    embedding_max_retries: int = _DEFAULT_EMBEDDING_MAX_RETRIES
    embedding_backoff_base: float = _DEFAULT_EMBEDDING_BACKOFF_BASE
    embedding_cache_ttl: float = _DEFAULT_EMBEDDING_CACHE_TTL
    embedding_max_chars: int = _DEFAULT_EMBEDDING_MAX_CHARS
    embedding_batch_size: int = _DEFAULT_EMBEDDING_BATCH_SIZE
    embedding_batch_delay: float = _DEFAULT_EMBEDDING_BATCH_DELAY
    qdrant_url: str = _DEFAULT_QDRANT_URL
    qdrant_api_key: str | None = None
    qdrant_collection: str = _DEFAULT_QDRANT_COLLECTION
    search_timeout: float = _DEFAULT_SEARCH_TIMEOUT
    workflow_base_url: str | None = None
    workflow_timeout: float = _DEFAULT_WORKFLOW_TIMEOUT
    workflow_retries: int = _DEFAULT_WORKFLOW_RETRIES
    workflow_retry_delay: float = _DEFAULT_WORKFLOW_RETRY_DELAY
    workflow_retry_client_errors: bool = True
    workflow_health_timeout: float = _DEFAULT_WORKFLOW_HEALTH_TIMEOUT
    upload_timeout: float = _DEFAULT_UPLOAD_TIMEOUT
    upload_retries: int = _DEFAULT_UPLOAD_RETRIES
    upload_max_bytes: int = _DEFAULT_UPLOAD_MAX_BYTES
    job_completed_retention: float = _DEFAULT_JOB_COMPLETED_RETENTION
    job_failed_retention: float = _DEFAULT_JOB_FAILED_RETENTION
    job_store_path: str | None = _DEFAULT_JOB_STORE_PATH
    maintenance_interval: float = _DEFAULT_MAINTENANCE_INTERVAL
    observability_metrics_enabled: bool = True
    observability_namespace: str = "compintel"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        job_store_raw = os.getenv("JOB_STORE_PATH")
        if job_store_raw is None:
            job_store_path: str | None = _DEFAULT_JOB_STORE_PATH
        else:
            job_store_path = job_store_raw.strip() or None

        return cls(
            openai_api_key=_env_optional_str("OPENAI_API_KEY"),
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", _DEFAULT_EMBEDDING_DIMENSIONS),
            embedding_base_url=os.getenv("EMBEDDING_BASE_URL", _DEFAULT_EMBEDDING_BASE_URL),
            embedding_api_key=_env_optional_str("EMBEDDING_API_KEY"),
            embedding_timeout=_env_float("EMBEDDING_TIMEOUT", _DEFAULT_EMBEDDING_TIMEOUT),
            embedding_max_retries=max(
                0, _env_int("EMBEDDING_MAX_RETRIES", _DEFAULT_EMBEDDING_MAX_RETRIES)
            ),
            embedding_backoff_base=_env_float("EMBEDDING_BACKOFF_BASE", _DEFAULT_EMBEDDING_BACKOFF_BASE),
            embedding_cache_ttl=_env_float("EMBEDDING_CACHE_TTL", _DEFAULT_EMBEDDING_CACHE_TTL),
            embedding_max_chars=_env_int("EMBEDDING_MAX_CHARS", _DEFAULT_EMBEDDING_MAX_CHARS),
            embedding_batch_size=max(1, _env_int("EMBEDDING_BATCH_SIZE", _DEFAULT_EMBEDDING_BATCH_SIZE)),
            embedding_batch_delay=_env_float("EMBEDDING_BATCH_DELAY", _DEFAULT_EMBEDDING_BATCH_DELAY),
            qdrant_url=os.getenv("QDRANT_URL", _DEFAULT_QDRANT_URL),
            qdrant_api_key=_env_optional_str("QDRANT_API_KEY"),
            qdrant_collection=os.getenv("QDRANT_COLLECTION", _DEFAULT_QDRANT_COLLECTION),
            search_timeout=_env_float("SEARCH_TIMEOUT", _DEFAULT_SEARCH_TIMEOUT),
            workflow_base_url=_env_optional_str("WORKFLOW_WEBHOOK_URL"),
            workflow_timeout=_env_float("WORKFLOW_TIMEOUT", _DEFAULT_WORKFLOW_TIMEOUT),
            workflow_retries=max(0, _env_int("WORKFLOW_RETRIES", _DEFAULT_WORKFLOW_RETRIES)),
            workflow_retry_delay=_env_float("WORKFLOW_RETRY_DELAY", _DEFAULT_WORKFLOW_RETRY_DELAY),
            workflow_retry_client_errors=_env_bool("WORKFLOW_RETRY_CLIENT_ERRORS", True),
            workflow_health_timeout=_env_float(
                "WORKFLOW_HEALTH_TIMEOUT", _DEFAULT_WORKFLOW_HEALTH_TIMEOUT
            ),
            upload_timeout=_env_float("UPLOAD_TIMEOUT", _DEFAULT_UPLOAD_TIMEOUT),
            upload_retries=max(0, _env_int("UPLOAD_RETRIES", _DEFAULT_UPLOAD_RETRIES)),
            upload_max_bytes=_env_int("UPLOAD_MAX_BYTES", _DEFAULT_UPLOAD_MAX_BYTES),
            job_completed_retention=_env_float(
                "JOB_COMPLETED_RETENTION", _DEFAULT_JOB_COMPLETED_RETENTION
            ),
            job_failed_retention=_env_float("JOB_FAILED_RETENTION", _DEFAULT_JOB_FAILED_RETENTION),
            job_store_path=job_store_path,
            maintenance_interval=_env_float("MAINTENANCE_INTERVAL", _DEFAULT_MAINTENANCE_INTERVAL),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "compintel"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_vllm_embedding_backend(self) -> bool:
        """Return True when embeddings come from an OpenAI-compatible vLLM server."""

        return self.embedding_model.strip().lower().startswith("vllm:")

    @property
    def embedding_model_name(self) -> str:
        """Return the provider-side model identifier without any backend prefix."""

        value = self.embedding_model.strip()
        if self.is_vllm_embedding_backend:
            _, _, value = value.partition(":")
            value = value.strip()
        if not value:
            msg = "EMBEDDING_MODEL must include a model identifier."
            raise ValueError(msg)
        return value

    @property
    def embedding_endpoint(self) -> str:
        """Return the resolved embeddings URL for the vLLM backend."""

        base_url = self.embedding_base_url.strip().rstrip("/")
        if base_url.endswith("/v1/embeddings"):
            base_url = base_url[: -len("/v1/embeddings")]
        elif base_url.endswith("/v1"):
            base_url = base_url[: -len("/v1")]
        if not base_url:
            msg = "Resolved embedding base URL is empty."
            raise ValueError(msg)
        return f"{base_url}/v1/embeddings"

    @property
    def workflow_configured(self) -> bool:
        return bool((self.workflow_base_url or "").strip())

    @property
    def job_sweep_interval(self) -> float:
        """Job retention is measured in minutes, so sweep at least once a minute."""

        return max(1.0, min(self.maintenance_interval, 60.0))

    def qdrant_client_kwargs(self) -> dict[str, Any]:
        """Configuration arguments for instantiating a Qdrant client."""

        kwargs: dict[str, Any] = {"url": self.qdrant_url}
        if self.qdrant_api_key:
            kwargs["api_key"] = self.qdrant_api_key
        return kwargs

    def job_store_file(self) -> Path | None:
        """Return the SQLite path for durable job mirroring, or None when disabled."""

        if not self.job_store_path:
            return None
        return Path(self.job_store_path).expanduser().resolve()

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )
