"""
Logs API Router

Provides endpoints to access raw runtime output and launcher logs from the UI.
"""

import logging

from fastapi import APIRouter, Query
from pydantic import BaseModel

from trh_launcher.api.services.log_capture import get_log_capture, get_runtime_log_buffer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/logs", tags=["logs"])


class RuntimeLogsResponse(BaseModel):
    """Recent runtime output lines, oldest first"""
    lines: list[str]
    total: int


class LogEntry(BaseModel):
    """Log entry response model"""
    timestamp: str
    level: str
    logger: str
    message: str
    run_id: str | None = None


class LogsResponse(BaseModel):
    """Response containing log entries"""
    logs: list[LogEntry]
    total: int
    filtered: int


@router.get("", response_model=RuntimeLogsResponse)
async def get_runtime_logs(
    limit: int = Query(default=200, ge=1, le=5000, description="Maximum number of lines to return"),
):
    """
    Get recent output of docker and the dependency installer.

    The same lines are pushed live over /ws/setup as "log" messages.
    """
    buffer = get_runtime_log_buffer()
    return RuntimeLogsResponse(lines=buffer.get_lines(limit), total=len(buffer))


@router.get("/launcher", response_model=LogsResponse)
async def get_launcher_logs(
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum number of logs to return"),
    level: str | None = Query(default=None, description="Filter by log level (DEBUG, INFO, WARNING, ERROR)"),
    logger_filter: str | None = Query(default=None, description="Filter by logger name (substring match)"),
):
    """
    Get recent launcher logs with optional filtering.

    Logs are returned in reverse chronological order (newest first).
    """
    capture = get_log_capture()

    if not capture:
        return LogsResponse(logs=[], total=0, filtered=0)

    logs = capture.get_logs(limit=limit, level=level, logger_filter=logger_filter)
    stats = capture.get_stats()

    return LogsResponse(
        logs=[LogEntry(**log) for log in logs],
        total=stats["total_captured"],
        filtered=len(logs),
    )
