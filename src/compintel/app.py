"""FastAPI application exposing competitive search, workflow dispatch and job callbacks."""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .embeddings import EmbeddingService
from .errors import ErrorCode, IntegrationError, ValidationError
from .job_store import JobStatusRepository
from .jobs import JobStatusTracker
from .knowledge_base import KnowledgeBase
from .maintenance import MaintenanceLoop
from .observability import MetricsRecorder
from .search import CompetitiveSearchService
from .uploads import BattlecardUploadService, UploadedFile
from .webhooks import WorkflowClient, classify_dispatch_error

logger = logging.getLogger(__name__)


_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    compintel_logger = logging.getLogger("compintel")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        compintel_logger.handlers = []
        for handler in handlers:
            compintel_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        compintel_logger.addHandler(handler)

    if compintel_logger.level == logging.NOTSET or compintel_logger.level > logging.INFO:
        compintel_logger.setLevel(logging.INFO)
    compintel_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        embedding_service: EmbeddingService,
        knowledge_base: KnowledgeBase,
        search_service: CompetitiveSearchService,
        workflow_client: WorkflowClient,
        upload_service: BattlecardUploadService,
        job_tracker: JobStatusTracker,
        maintenance: MaintenanceLoop,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.embedding_service = embedding_service
        self.knowledge_base = knowledge_base
        self.search_service = search_service
        self.workflow_client = workflow_client
        self.upload_service = upload_service
        self.job_tracker = job_tracker
        self.maintenance = maintenance
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    embedding_service: EmbeddingService | None = None,
    knowledge_base: KnowledgeBase | None = None,
    workflow_client: WorkflowClient | None = None,
    job_tracker: JobStatusTracker | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    embedding_service = embedding_service or EmbeddingService(settings, metrics=metrics)

    if knowledge_base is None:
        knowledge_base = KnowledgeBase.from_settings(settings)
        knowledge_base.ensure_collection()
        knowledge_base.ensure_payload_indexes()

    workflow_client = workflow_client or WorkflowClient.from_settings(settings, metrics=metrics)

    if job_tracker is None:
        store_path = settings.job_store_file()
        job_tracker = JobStatusTracker(
            completed_retention=settings.job_completed_retention,
            failed_retention=settings.job_failed_retention,
            repository=JobStatusRepository(store_path) if store_path is not None else None,
            metrics=metrics,
        )

    search_service = CompetitiveSearchService(embedding_service, knowledge_base, metrics=metrics)
    upload_service = BattlecardUploadService.from_settings(workflow_client, settings)

    maintenance = MaintenanceLoop(metrics=metrics)
    maintenance.add("embedding-cache", settings.maintenance_interval, embedding_service.sweep_cache)
    maintenance.add("job-eviction", settings.job_sweep_interval, job_tracker.sweep)

    logger.info(
        "app.start embedding_model=%s collection=%s workflow_configured=%s job_store=%s",
        embedding_service.model_identifier,
        knowledge_base.collection_name,
        workflow_client.configured,
        settings.job_store_file(),
    )

    app = FastAPI()
    app.state.services = ApplicationState(
        settings=settings,
        embedding_service=embedding_service,
        knowledge_base=knowledge_base,
        search_service=search_service,
        workflow_client=workflow_client,
        upload_service=upload_service,
        job_tracker=job_tracker,
        maintenance=maintenance,
        metrics=metrics,
    )

    @app.on_event("startup")
    async def _start_maintenance() -> None:
        maintenance.start()

    @app.on_event("shutdown")
    async def _shutdown_services() -> None:
        await maintenance.stop()
        await job_tracker.drain()
        await workflow_client.aclose()
        await embedding_service.aclose()

    @app.exception_handler(IntegrationError)
    async def _integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "api.error method=%s path=%s code=%s status=%s message=%s",
            request.method,
            request.url.path,
            exc.code.value,
            exc.status_code,
            exc.message,
        )
        if metrics:
            metrics.increment("api.error", code=exc.code.value)
        return JSONResponse(exc.to_payload(request.url.path), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = ValidationError("Invalid request", details={"errors": jsonable_encoder(exc.errors())})
        return await _integration_error_handler(request, error)

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("api.unhandled method=%s path=%s", request.method, request.url.path)
        error = IntegrationError("Internal server error", code=ErrorCode.INTERNAL_ERROR)
        return JSONResponse(error.to_payload(request.url.path), status_code=error.status_code)

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_embedding_service(request: Request) -> EmbeddingService:
        return get_state(request).embedding_service

    def get_search_service(request: Request) -> CompetitiveSearchService:
        return get_state(request).search_service

    def get_workflow_client(request: Request) -> WorkflowClient:
        return get_state(request).workflow_client

    def get_upload_service(request: Request) -> BattlecardUploadService:
        return get_state(request).upload_service

    def get_job_tracker(request: Request) -> JobStatusTracker:
        return get_state(request).job_tracker

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    @app.post("/api/search/competitive", response_class=JSONResponse)
    async def competitive_search(
        request: Request,
        search_service: CompetitiveSearchService = Depends(get_search_service),
    ) -> JSONResponse:
        body = await _read_json(request)
        return JSONResponse(await search_service.search(body))

    @app.get("/api/search/competitive", response_class=JSONResponse)
    async def competitive_search_info(
        action: str | None = Query(None),
        search_service: CompetitiveSearchService = Depends(get_search_service),
    ) -> JSONResponse:
        if action == "health":
            return JSONResponse(search_service.health())
        if action == "stats":
            return JSONResponse(search_service.stats())
        raise ValidationError("Invalid action parameter", details={"validActions": ["health", "stats"]})

    @app.post("/api/embeddings", response_class=JSONResponse)
    async def create_embedding(
        request: Request,
        embedding: EmbeddingService = Depends(get_embedding_service),
    ) -> JSONResponse:
        body = await _read_json(request)
        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise ValidationError("text is required and must be a string")
        vector = await embedding.get_embedding(text)
        return JSONResponse(
            {"embedding": vector, "dimensions": len(vector), "model": embedding.model_identifier}
        )

    @app.get("/api/embeddings/health", response_class=JSONResponse)
    async def embedding_health(
        embedding: EmbeddingService = Depends(get_embedding_service),
    ) -> JSONResponse:
        report = await embedding.health_check()
        return JSONResponse(report, status_code=200 if report["healthy"] else 503)

    @app.post("/api/workflows/{endpoint:path}", response_class=JSONResponse)
    async def dispatch_workflow(
        endpoint: str,
        request: Request,
        workflow_client: WorkflowClient = Depends(get_workflow_client),
    ) -> JSONResponse:
        body = await _read_json(request)
        if not isinstance(body, dict) or "payload" not in body:
            raise ValidationError("Request body must be an object with a 'payload' field")
        timeout = _optional_positive_float(body.get("timeout"), "timeout")
        retries = _optional_non_negative_int(body.get("retries"), "retries")
        try:
            response = await workflow_client.send_json(
                endpoint,
                body["payload"],
                timeout=timeout,
                retries=retries,
            )
        except IntegrationError as exc:
            classified = classify_dispatch_error(exc, action=f"workflow '{endpoint}'")
            if classified is exc:
                raise
            raise classified from exc
        return JSONResponse({"success": True, "endpoint": endpoint, "data": response})

    @app.post("/api/uploads/battlecard", response_class=JSONResponse)
    async def upload_battlecard(
        competitor: str | None = Form(None),
        verticals: str | None = Form(None),
        source_type: str | None = Form(None, alias="sourceType"),
        content: str | None = Form(None),
        file: UploadFile | None = File(None),
        upload_service: BattlecardUploadService = Depends(get_upload_service),
    ) -> JSONResponse:
        uploaded: UploadedFile | None = None
        if file is not None and file.filename:
            uploaded = UploadedFile(
                filename=file.filename,
                content=await file.read(),
                content_type=file.content_type,
            )
        result = await upload_service.upload(
            competitor=competitor,
            verticals=verticals,
            source_type=source_type,
            content=content,
            file=uploaded,
        )
        return JSONResponse(result)

    @app.get("/api/uploads/battlecard", response_class=JSONResponse)
    async def upload_health(
        upload_service: BattlecardUploadService = Depends(get_upload_service),
    ) -> JSONResponse:
        return JSONResponse(await upload_service.health())

    @app.post("/api/webhooks/workflow", response_class=JSONResponse)
    async def workflow_notification(
        request: Request,
        job_tracker: JobStatusTracker = Depends(get_job_tracker),
    ) -> JSONResponse:
        body = await _read_json(request)
        return JSONResponse(await job_tracker.handle(body))

    @app.get("/api/webhooks/workflow", response_class=JSONResponse)
    async def workflow_jobs(
        workflow_id: str | None = Query(None, alias="workflowId"),
        action: str | None = Query(None),
        job_tracker: JobStatusTracker = Depends(get_job_tracker),
    ) -> JSONResponse:
        if action == "health":
            return JSONResponse(job_tracker.health())
        if workflow_id:
            job = job_tracker.get(workflow_id)
            return JSONResponse({"success": True, "job": job.to_dict()})
        jobs = job_tracker.list()
        return JSONResponse(
            {
                "success": True,
                "jobs": [job.to_dict() for job in jobs],
                "totalJobs": len(jobs),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    return app


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Invalid JSON in request body") from exc


def _optional_positive_float(value: Any, name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
        raise ValidationError(f"{name} must be a positive number of seconds")
    return float(value)


def _optional_non_negative_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


__all__ = ["ApplicationState", "create_app"]
