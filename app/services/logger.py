"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from app.config import settings

# Configure loguru
LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

# Add file handler
logger.add(
    LOG_DIR / "visibility_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "anthropic._base_client",
    "asyncpg",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_connector_call(
    source: str,
    model: str,
    query: str,
    duration_ms: int = 0,
    citations: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log one assistant provider call."""
    call_data = {
        "timestamp": _now(),
        "source": source,
        "model": model,
        "query": query[:120],
        "duration_ms": duration_ms,
        "citations": citations,
        "status": status,
        "error": error,
    }
    if error:
        logger.warning(f"CONNECTOR_CALL_FAILED: {call_data}")
    else:
        logger.info(f"CONNECTOR_CALL: {call_data}")


def log_run_event(
    run_id: str,
    event: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a run lifecycle transition."""
    run_data = {
        "timestamp": _now(),
        "run_id": run_id,
        "event": event,
        "status": status,
        "data": data,
    }
    if status == "error":
        logger.error(f"RUN_EVENT: {run_data}")
    else:
        logger.info(f"RUN_EVENT: {run_data}")


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a database operation."""
    op_data = {
        "timestamp": _now(),
        "operation": operation,
        "table": table,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"DB_OPERATION_FAILED: {op_data}")
    else:
        logger.debug(f"DB_OPERATION: {op_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
