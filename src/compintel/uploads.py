"""Battlecard upload: validate the submission and hand it to the ingestion workflow."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Mapping

from .config import Settings
from .errors import ErrorCode, FileValidationError, IntegrationError, ValidationError
from .webhooks import Attachment, MultipartPayload, WorkflowClient, classify_dispatch_error

logger = logging.getLogger(__name__)

UPLOAD_ENDPOINT = "upload-battlecard"
DEFAULT_SOURCE_TYPE = "battlecard"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024

ALLOWED_EXTENSIONS = (".pdf", ".docx", ".txt", ".md")
ALLOWED_CONTENT_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
        "text/markdown",
    }
)
_SIGNATURES = {
    ".pdf": (b"%PDF", "PDF"),
    ".docx": (b"PK", "DOCX"),
}


@dataclass(slots=True)
class UploadedFile:
    filename: str
    content: bytes
    content_type: str | None = None

    @property
    def extension(self) -> str:
        return PurePath(self.filename).suffix.lower()

    @property
    def size(self) -> int:
        return len(self.content)


def validate_upload(
    filename: str,
    content_type: str | None,
    data: bytes,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> UploadedFile:
    """Check size, extension, declared MIME type and leading signature bytes."""

    upload = UploadedFile(filename=filename or "", content=data, content_type=content_type or None)
    details = {"size": upload.size, "type": upload.content_type or "", "extension": upload.extension}

    if upload.size > max_bytes:
        raise IntegrationError(
            (
                f"File size {upload.size / 1024 / 1024:.2f}MB exceeds maximum allowed size of "
                f"{max_bytes / 1024 / 1024:g}MB"
            ),
            code=ErrorCode.FILE_TOO_LARGE,
            details=details,
        )
    if upload.extension not in ALLOWED_EXTENSIONS:
        raise IntegrationError(
            (
                f"File extension {upload.extension or '(none)'} is not supported. "
                f"Allowed types: {', '.join(ALLOWED_EXTENSIONS)}"
            ),
            code=ErrorCode.UNSUPPORTED_FILE_TYPE,
            details=details,
        )
    if upload.content_type and upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise IntegrationError(
            f"File type {upload.content_type} is not supported. Allowed types: PDF, DOCX, TXT, MD",
            code=ErrorCode.UNSUPPORTED_FILE_TYPE,
            details=details,
        )

    signature = _SIGNATURES.get(upload.extension)
    if signature is not None:
        magic, label = signature
        if not upload.content.startswith(magic):
            raise FileValidationError(
                f"File appears to be corrupted or not a valid {label}",
                details=details,
            )
    return upload


def parse_verticals(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class BattlecardUploadService:
    """Forward battlecard text or documents to the ingestion workflow."""

    def __init__(
        self,
        workflow_client: WorkflowClient,
        *,
        timeout: float = 60.0,
        retries: int = 1,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._client = workflow_client
        self._timeout = timeout
        self._retries = retries
        self._max_bytes = max_bytes

    @classmethod
    def from_settings(cls, workflow_client: WorkflowClient, settings: Settings) -> "BattlecardUploadService":
        return cls(
            workflow_client,
            timeout=settings.upload_timeout,
            retries=settings.upload_retries,
            max_bytes=settings.upload_max_bytes,
        )

    async def upload(
        self,
        *,
        competitor: str | None,
        verticals: str | None = None,
        source_type: str | None = None,
        content: str | None = None,
        file: UploadedFile | None = None,
    ) -> dict[str, Any]:
        start = time.perf_counter()
        # Fails with CONFIGURATION_ERROR before any input is inspected.
        self._client.url_for(UPLOAD_ENDPOINT)

        competitor = (competitor or "").strip()
        if not competitor:
            raise ValidationError("Competitor name is required")
        text = (content or "").strip()
        if not text and file is None:
            raise ValidationError("Either content text or file is required")

        vertical_list = parse_verticals(verticals)
        fields = {
            "competitor": competitor,
            "verticals": json.dumps(vertical_list),
            "sourceType": (source_type or "").strip() or DEFAULT_SOURCE_TYPE,
        }
        attachment: Attachment | None = None
        if file is not None:
            checked = validate_upload(file.filename, file.content_type, file.content, self._max_bytes)
            content_type = checked.content_type or "application/octet-stream"
            attachment = Attachment(checked.filename, checked.content, content_type)
            fields.update(
                {
                    "mode": "file",
                    "fileName": checked.filename,
                    "fileSize": str(checked.size),
                    "fileType": content_type,
                }
            )
        else:
            fields.update({"content": text, "mode": "text"})

        try:
            response = await self._client.send(
                UPLOAD_ENDPOINT,
                MultipartPayload(fields=fields, attachment=attachment),
                timeout=self._timeout,
                retries=self._retries,
            )
        except IntegrationError as exc:
            logger.error(
                "uploads.battlecard.failed competitor=%s mode=%s error=%s",
                competitor,
                fields["mode"],
                exc.message,
            )
            classified = classify_dispatch_error(exc, action="battlecard upload")
            if classified is exc:
                raise
            raise classified from exc

        processing_ms = int(round((time.perf_counter() - start) * 1000))
        logger.info(
            "uploads.battlecard.success competitor=%s verticals=%s mode=%s size=%s processing_ms=%s",
            competitor,
            len(vertical_list),
            fields["mode"],
            attachment and len(attachment.content),
            processing_ms,
        )
        return {
            "success": True,
            "message": "Battlecard uploaded successfully",
            "data": {
                "sourceId": _get(response, "sourceId"),
                "chunksCreated": _get(response, "chunksCreated"),
                "competitor": competitor,
                "verticals": vertical_list,
                "processingTimeMs": processing_ms,
            },
        }

    async def health(self) -> dict[str, Any]:
        reachable = await self._client.health_check()
        return {
            "status": "ok",
            "workflowConnectivity": "connected" if reachable else "disconnected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def _get(response: Mapping[str, Any], key: str) -> Any:
    value = response.get(key)
    if value is None and isinstance(response.get("data"), Mapping):
        value = response["data"].get(key)
    return value


__all__ = [
    "ALLOWED_CONTENT_TYPES",
    "ALLOWED_EXTENSIONS",
    "BattlecardUploadService",
    "UploadedFile",
    "parse_verticals",
    "validate_upload",
]
