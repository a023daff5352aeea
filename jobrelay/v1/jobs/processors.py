"""
Built-in job processors.

Each processor implements the JobProcessor protocol for one job type. They
simulate the latency of the downstream service they stand in for and raise
when the payload carries ``shouldFail``, which exercises the retry path.
"""

import asyncio
import time
from datetime import UTC, datetime
from typing import Any

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import Settings

logger = get_logger(__name__)


class ProcessingError(Exception):
    """Raised by a processor when the simulated downstream call fails."""


class SimulatedProcessor:
    """Base class for processors that fake a downstream call."""

    job_type: str = ""
    delay_seconds: float = 0.0
    failure_message: str = "Processing failed"

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        logger.info("Processing job payload", job_type=self.job_type)

        delay = self.delay_seconds * self.settings.processor_delay_scale
        if delay > 0:
            await asyncio.sleep(delay)

        if payload.get("shouldFail"):
            raise ProcessingError(self.failure_message)

        return self.build_result(payload)

    def build_result(self, payload: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _stamp() -> int:
    return int(time.time() * 1000)


class EmailSendProcessor(SimulatedProcessor):
    """
    Sends an email.

    Payload expected:
    {
        "to": "recipient@example.com",
        "subject": "...",      # optional
        "body": "..."          # optional
    }
    """

    job_type = "email:send"
    delay_seconds = 2.0
    failure_message = "Email service unavailable"

    def build_result(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "messageId": f"email-{_stamp()}",
            "recipient": payload.get("to"),
            "sentAt": _now_iso(),
        }


class FileProcessProcessor(SimulatedProcessor):
    """Transforms an uploaded file."""

    job_type = "file:process"
    delay_seconds = 3.0
    failure_message = "File processing failed"

    def build_result(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "fileId": payload.get("fileId"),
            "processedAt": _now_iso(),
            "size": payload.get("size") or 1024,
            "format": payload.get("format") or "unknown",
        }


class DataExportProcessor(SimulatedProcessor):
    """
    Exports records into a downloadable file.

    Payload expected:
    {
        "format": "csv",       # optional
        "recordCount": 100     # optional
    }
    """

    job_type = "data:export"
    delay_seconds = 5.0
    failure_message = "Export failed"

    def build_result(self, payload: dict[str, Any]) -> dict[str, Any]:
        stamp = _stamp()
        return {
            "exportId": f"export-{stamp}",
            "format": payload.get("format") or "csv",
            "recordCount": payload.get("recordCount") or 0,
            "downloadUrl": f"https://example.com/exports/{stamp}",
        }


class NotificationSendProcessor(SimulatedProcessor):
    job_type = "notification:send"
    delay_seconds = 1.0
    failure_message = "Notification service error"

    def build_result(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "notificationId": f"notif-{_stamp()}",
            "recipient": payload.get("userId"),
            "type": payload.get("type") or "info",
            "sentAt": _now_iso(),
        }


class WorkspaceBackupProcessor(SimulatedProcessor):
    """
    Snapshots a workspace.

    Payload expected:
    {
        "workspaceId": "workspace identifier",
        "size": 0              # optional
    }
    """

    job_type = "workspace:backup"
    delay_seconds = 10.0
    failure_message = "Backup failed"

    def build_result(self, payload: dict[str, Any]) -> dict[str, Any]:
        workspace_id = payload.get("workspaceId")
        return {
            "backupId": f"backup-{_stamp()}",
            "workspaceId": workspace_id,
            "size": payload.get("size") or 0,
            "backupUrl": f"https://example.com/backups/{workspace_id}/{_stamp()}",
            "createdAt": _now_iso(),
        }


BUILTIN_PROCESSORS: list[type[SimulatedProcessor]] = [
    EmailSendProcessor,
    FileProcessProcessor,
    DataExportProcessor,
    NotificationSendProcessor,
    WorkspaceBackupProcessor,
]
