"""Loguru configuration for reconciliation runs.

Every record carries the sync context of the code that emitted it: the run
id of the reconciliation, the link and target course being processed and
the pass name. The context lives in context variables set by the engine,
the incremental handler and the lost-link handler; a loguru patcher copies
it into ``record["extra"]`` so both the console format and the JSON lines
see it.

Example:
    >>> from metagroupsync.logging import logger, set_sync_context
    >>> set_sync_context(run_id="a1b2c3", course_id=20)
    >>> logger.info("Reconciling course")
"""

import json
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Any, TextIO

from loguru import logger as loguru_logger

from metagroupsync.config import settings

run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
link_id_var: ContextVar[int | None] = ContextVar("link_id", default=None)
course_id_var: ContextVar[int | None] = ContextVar("course_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "{extra[sync]}<level>{message}</level>"
)


def attach_sync_context(record: dict[str, Any]) -> None:
    """Loguru patcher: fold the current sync context into the record.

    ``extra["sync"]`` is a short prefix for the console format, e.g.
    ``"[run a1b2c3 link 7] "``; the non-empty context values are also
    stored as individual extras and the JSON line in ``extra["json"]``.
    """
    context = {key: value for key, value in get_sync_context().items() if value is not None}
    record["extra"].update(context)

    labels = []
    if "run_id" in context:
        labels.append(f"run {context['run_id']}")
    if "link_id" in context:
        labels.append(f"link {context['link_id']}")
    record["extra"]["sync"] = f"[{' '.join(labels)}] " if labels else ""
    record["extra"]["json"] = to_json_line(record)


def to_json_line(record: dict[str, Any]) -> str:
    """One JSON object per record: level, message, origin, sync context, exception."""
    line: dict[str, Any] = {
        "time": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["module"],
        "line": record["line"],
    }
    line.update(
        {key: value for key, value in record["extra"].items() if key not in ("sync", "json")}
    )
    if exc := record["exception"]:
        line["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value),
        }
    return json.dumps(line, default=str)


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Path | None = None,
    colorize: bool = True,
    stream: TextIO | None = None,
) -> Any:
    """(Re)configure loguru and return the patched logger.

    Args:
        level: Minimum log level
        json_logs: Write JSON lines instead of the console format
        log_file: Also append to this file, rotated at 100 MB and zipped
        colorize: Color the console format
        stream: Console stream (default: stderr, so command output stays clean)
    """
    loguru_logger.remove()
    patched = loguru_logger.patch(attach_sync_context)

    line_format = "{extra[json]}" if json_logs else CONSOLE_FORMAT
    patched.add(
        stream or sys.stderr,
        level=level,
        format=line_format,
        colorize=colorize and not json_logs,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        patched.add(
            log_file,
            level=level,
            format="{extra[json]}" if json_logs else "{time} | {level} | {extra[sync]}{message}",
            rotation="100 MB",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )

    return patched


logger = setup_logging(
    level=settings.log_level,
    json_logs=settings.log_json,
    log_file=settings.data_dir / "metagroupsync.log" if settings.log_to_file else None,
)


def set_sync_context(
    run_id: str | None = None,
    link_id: int | None = None,
    course_id: int | None = None,
    operation: str | None = None,
) -> None:
    """Set the given parts of the sync context; omitted parts are left as they are.

    Example:
        >>> set_sync_context(run_id="a1b2c3", operation="pass_create")
    """
    if run_id is not None:
        run_id_var.set(run_id)
    if link_id is not None:
        link_id_var.set(link_id)
    if course_id is not None:
        course_id_var.set(course_id)
    if operation is not None:
        operation_var.set(operation)


def clear_sync_context() -> None:
    run_id_var.set(None)
    link_id_var.set(None)
    course_id_var.set(None)
    operation_var.set(None)


def get_sync_context() -> dict[str, Any]:
    """Current sync context values (None where unset)."""
    return {
        "run_id": run_id_var.get(),
        "link_id": link_id_var.get(),
        "course_id": course_id_var.get(),
        "operation": operation_var.get(),
    }


__all__ = [
    "logger",
    "run_id_var",
    "link_id_var",
    "course_id_var",
    "operation_var",
    "attach_sync_context",
    "to_json_line",
    "set_sync_context",
    "clear_sync_context",
    "get_sync_context",
    "setup_logging",
]
