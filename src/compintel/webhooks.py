"""Outbound client for the workflow-automation service.

Payloads are a tagged variant: :class:`JsonPayload` is serialised into a single
JSON body, :class:`MultipartPayload` carries form fields and an optional binary
attachment. Every attempt is bounded by an explicit deadline; timeouts,
transport failures and non-2xx responses are retried with a linearly growing
delay (``attempt * retry_delay``) and the last attempt's error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union

import httpx

from .config import Settings
from .errors import (
    ConfigurationError,
    DeadlineExceededError,
    ErrorCode,
    IntegrationError,
    ValidationError,
    WebhookError,
)
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Client errors that still indicate a transient condition upstream.
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})
_MAX_ERROR_BODY_CHARS = 500


@dataclass(frozen=True, slots=True)
class JsonPayload:
    data: Any


@dataclass(frozen=True, slots=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class MultipartPayload:
    fields: Mapping[str, str] = field(default_factory=dict)
    attachment: Attachment | None = None
    attachment_field: str = "file"


OutboundPayload = Union[JsonPayload, MultipartPayload]


class WorkflowTimeoutError(DeadlineExceededError):
    """An attempt exceeded its deadline."""


class WorkflowDispatchError(WebhookError):
    """The workflow service was unreachable or answered with a non-2xx status."""

    def __init__(self, message: str, *, upstream_status: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


class WorkflowClient:
    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float = 30.0,
        retries: int = 2,
        retry_delay: float = 1.0,
        retry_client_errors: bool = True,
        health_timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsRecorder | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._base_url = (base_url or "").strip().rstrip("/")
        self._timeout = timeout
        self._retries = max(0, retries)
        self._retry_delay = max(0.0, retry_delay)
        self._retry_client_errors = retry_client_errors
        self._health_timeout = health_timeout
        self._client = client or httpx.AsyncClient()
        self._metrics = metrics
        self._sleep = sleep
        if not self._base_url:
            logger.warning("workflow.client.unconfigured base_url is not set")

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "WorkflowClient":
        return cls(
            settings.workflow_base_url,
            timeout=settings.workflow_timeout,
            retries=settings.workflow_retries,
            retry_delay=settings.workflow_retry_delay,
            retry_client_errors=settings.workflow_retry_client_errors,
            health_timeout=settings.workflow_health_timeout,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def url_for(self, endpoint: str) -> str:
        if not self._base_url:
            raise ConfigurationError("Workflow webhook URL is not configured")
        return f"{self._base_url}/{endpoint.lstrip('/')}"

    async def send(
        self,
        endpoint: str,
        payload: OutboundPayload,
        *,
        timeout: float | None = None,
        retries: int | None = None,
        retry_delay: float | None = None,
    ) -> dict[str, Any]:
        """Dispatch ``payload`` to ``endpoint`` and return the decoded JSON response."""

        url = self.url_for(endpoint)
        timeout = self._timeout if timeout is None else timeout
        retries = self._retries if retries is None else max(0, retries)
        delay_base = self._retry_delay if retry_delay is None else max(0.0, retry_delay)
        mode = "json" if isinstance(payload, JsonPayload) else "multipart"
        attempts = retries + 1

        for attempt in range(1, attempts + 1):
            start = time.perf_counter()
            try:
                result = await self._attempt(url, payload, timeout)
            except (WorkflowTimeoutError, WorkflowDispatchError) as exc:
                self._record(endpoint, mode, "error", time.perf_counter() - start)
                logger.warning(
                    "workflow.dispatch.failed endpoint=%s mode=%s attempt=%s/%s error=%s",
                    endpoint,
                    mode,
                    attempt,
                    attempts,
                    exc.message,
                )
                if not self._should_retry(exc) or attempt >= attempts:
                    raise
                if self._metrics:
                    self._metrics.increment("workflow.retry", endpoint=endpoint)
                await self._sleep(attempt * delay_base)
                continue

            self._record(endpoint, mode, "success", time.perf_counter() - start)
            logger.info(
                "workflow.dispatch.success endpoint=%s mode=%s attempt=%s",
                endpoint,
                mode,
                attempt,
            )
            return result

        raise RuntimeError(f"workflow dispatch made no attempts: attempts={attempts}")

    async def send_json(self, endpoint: str, data: Any, **kwargs: Any) -> dict[str, Any]:
        return await self.send(endpoint, JsonPayload(data), **kwargs)

    async def send_multipart(
        self,
        endpoint: str,
        fields: Mapping[str, str],
        attachment: Attachment | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        return await self.send(endpoint, MultipartPayload(fields=fields, attachment=attachment), **kwargs)

    async def health_check(self) -> bool:
        """Probe the base URL once; report reachability without retrying."""

        if not self._base_url:
            return False
        try:
            response = await asyncio.wait_for(
                self._client.get(self._base_url, timeout=self._health_timeout),
                timeout=self._health_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.info("workflow.health.unreachable error=%s", exc)
            return False
        return response.is_success

    async def aclose(self) -> None:
        await self._client.aclose()

    # Internal helpers -------------------------------------------------

    async def _attempt(self, url: str, payload: OutboundPayload, timeout: float) -> dict[str, Any]:
        request_kwargs = self._request_kwargs(payload)
        try:
            response = await asyncio.wait_for(
                self._client.post(url, timeout=timeout, **request_kwargs),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise WorkflowTimeoutError(
                f"Request timed out after {timeout:g}s",
                details={"timeout": timeout},
            ) from exc
        except httpx.HTTPError as exc:
            raise WorkflowDispatchError(f"Transport error: {exc}") from exc

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY_CHARS]
            raise WorkflowDispatchError(
                f"HTTP {response.status_code}: {body}",
                upstream_status=response.status_code,
                details={"status": response.status_code},
            )

        try:
            decoded = response.json()
        except ValueError:
            return {"success": True, "raw": response.text}
        if isinstance(decoded, dict):
            return decoded
        return {"success": True, "data": decoded}

    @staticmethod
    def _request_kwargs(payload: OutboundPayload) -> dict[str, Any]:
        if isinstance(payload, JsonPayload):
            return {"json": payload.data}
        if payload.attachment is None:
            # Field-only parts still go out as multipart/form-data.
            return {"files": [(name, (None, value)) for name, value in payload.fields.items()]}
        attachment = payload.attachment
        return {
            "data": dict(payload.fields),
            "files": {
                payload.attachment_field: (
                    attachment.filename,
                    attachment.content,
                    attachment.content_type,
                )
            },
        }

    def _should_retry(self, exc: IntegrationError) -> bool:
        if self._retry_client_errors or not isinstance(exc, WorkflowDispatchError):
            return True
        status = exc.upstream_status
        if status is None or status >= 500:
            return True
        return status in _RETRYABLE_CLIENT_STATUSES

    def _record(self, endpoint: str, mode: str, outcome: str, elapsed: float) -> None:
        if self._metrics:
            self._metrics.record_timing(
                "workflow.dispatch", elapsed, endpoint=endpoint, mode=mode, outcome=outcome
            )


def classify_dispatch_error(exc: Exception, *, action: str) -> IntegrationError:
    """Map a dispatch failure onto the user-facing error code and status."""

    if isinstance(exc, (ConfigurationError, DeadlineExceededError)):
        return exc
    message = exc.message if isinstance(exc, IntegrationError) else str(exc)
    details = {"workflowError": message}
    upstream = getattr(exc, "upstream_status", None)
    if upstream == 413:
        return IntegrationError(
            f"Failed to process {action}: {message}",
            code=ErrorCode.FILE_TOO_LARGE,
            details=details,
        )
    if upstream == 400:
        return ValidationError(f"Failed to process {action}: {message}", details=details)
    return WebhookError(f"Failed to process {action}: {message}", details=details)


__all__ = [
    "Attachment",
    "JsonPayload",
    "MultipartPayload",
    "OutboundPayload",
    "WorkflowClient",
    "WorkflowDispatchError",
    "WorkflowTimeoutError",
    "classify_dispatch_error",
]
