"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from researchlens.config import settings

LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "researchlens_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for logger_name in (
    "httpx",
    "httpcore",
    "openai._base_client",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_fetch(
    source: str,
    status: str,
    attempts: int = 1,
    duration_ms: int = 0,
    strategy: str | None = None,
    error: Optional[str] = None,
) -> None:
    """Log the outcome of fetching one source."""
    fetch_data = {
        "timestamp": _now_iso(),
        "source": source,
        "status": status,
        "strategy": strategy,
        "attempts": attempts,
        "duration_ms": duration_ms,
        "error": error,
    }
    if error:
        logger.warning(f"FETCH_FAILED: {fetch_data}")
    else:
        logger.info(f"FETCH: {fetch_data}")


def log_cache_operation(
    cache: str,
    operation: str,
    key: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a cache read, write or maintenance operation."""
    op_data = {
        "timestamp": _now_iso(),
        "cache": cache,
        "operation": operation,
        "key": key,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"CACHE_OPERATION_FAILED: {op_data}")
    else:
        logger.debug(f"CACHE_OPERATION: {op_data}")


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log a text model API call."""
    call_data = {
        "timestamp": _now_iso(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now_iso(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
