from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger


PROJECT_ROOT = Path(__file__).resolve().parents[2]
PRETTY_LOG_PATH = PROJECT_ROOT / "latest.log"
STRUCTURED_LOG_PATH = PROJECT_ROOT / "latest.structured.jsonl"


_CONFIGURED = False


def _normalize_level(level: str | None) -> str:
    raw = (level or "INFO").strip().upper()
    valid = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
    if raw in valid:
        return raw
    return "INFO"


def setup_logging(
    *,
    component: str = "scheduler",
    force: bool = False,
    add_stderr: bool = True,
    write_files: bool = True,
) -> dict[str, str]:
    global _CONFIGURED

    paths = {
        "pretty": str(PRETTY_LOG_PATH),
        "structured": str(STRUCTURED_LOG_PATH),
    }
    if _CONFIGURED and not force:
        return paths

    logger.remove()
    logger.configure(extra={"component": component, "key": "-", "stage": component})

    fmt = (
        "... {time:HH:mm:ss.SSS} {level:<5} "
        "[{extra[component]:<9}] "
        "[{extra[key]:<12}] "
        "[{extra[stage]:<10}] "
        "{message}"
    )

    level_name = _normalize_level(os.getenv("WEBHOOK_DELAY_LOG_LEVEL", "INFO"))

    if add_stderr:
        logger.add(
            sys.stderr,
            level=level_name,
            format=fmt,
            colorize=False,
            enqueue=False,
            backtrace=False,
            diagnose=False,
        )

    if write_files:
        PRETTY_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            PRETTY_LOG_PATH,
            level=level_name,
            format=fmt,
            colorize=False,
            enqueue=False,
            encoding="utf-8",
            rotation="10 MB",
            retention=5,
            backtrace=False,
            diagnose=False,
        )
        logger.add(
            STRUCTURED_LOG_PATH,
            level=level_name,
            serialize=True,
            enqueue=False,
            encoding="utf-8",
            rotation="10 MB",
            retention=5,
            backtrace=False,
            diagnose=False,
        )

    _CONFIGURED = True
    return paths


def emit_event(
    bound_logger: Any,
    message: str,
    *,
    level: str = "INFO",
    event: str | None = None,
    scheduler_key: str | None = None,
    stage: str | None = None,
    outcome: str | None = None,
    retry_count: int | None = None,
    scheduled_for: str | None = None,
    duration_ms: int | float | None = None,
    error_category: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    extras: dict[str, Any] = {}
    if event is not None:
        extras["event"] = event
    if scheduler_key is not None:
        extras["scheduler_key"] = scheduler_key
        extras["key"] = scheduler_key[:12]
    if stage is not None:
        extras["stage"] = stage
    if outcome is not None:
        extras["outcome"] = outcome
    if retry_count is not None:
        extras["retry_count"] = retry_count
    if scheduled_for is not None:
        extras["scheduled_for"] = scheduled_for
    if duration_ms is not None:
        extras["duration_ms"] = duration_ms
    if error_category is not None:
        extras["error_category"] = error_category
    if meta is not None:
        extras["meta"] = meta

    logger_obj = bound_logger.bind(**extras) if extras else bound_logger
    logger_obj.log(_normalize_level(level), message)
