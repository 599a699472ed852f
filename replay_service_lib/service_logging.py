from __future__ import annotations

import asyncio
import contextvars
import datetime as dt
import json
import logging
import re
from collections import deque
from typing import Any, Optional

from .service_config import ANSI_RE, COLLAPSE_INTERNAL_SPACES, CTRL_ZW_RE, RUN_LOG_MAX_LINES, STRIP_ANSI

run_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")
_STD_LOG_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "run_id",
}


def _clean_message(msg: str) -> str:
    if STRIP_ANSI:
        msg = ANSI_RE.sub("", msg)
    msg = CTRL_ZW_RE.sub("", msg)
    if COLLAPSE_INTERNAL_SPACES:
        msg = re.sub(r"[ \t\u00A0]{2,}", " ", msg)
    return msg.strip()


def _hijack_library_loggers():
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        if not getattr(record, "run_id", None):
            setattr(record, "run_id", run_id_ctx.get())
        return True


class RunLogBuffer:
    """Bounded in-memory log lines, keyed by run id."""

    def __init__(self, max_lines: int = RUN_LOG_MAX_LINES, max_runs: int = 200):
        self.max_lines = max_lines
        self.max_runs = max_runs
        self._lines: dict[str, deque[str]] = {}

    def append(self, run_id: str, line: str) -> int:
        buf = self._lines.get(run_id)
        if buf is None:
            if len(self._lines) >= self.max_runs:
                # drop the oldest run
                self._lines.pop(next(iter(self._lines)))
            buf = self._lines[run_id] = deque(maxlen=self.max_lines)
        buf.append(line)
        return len(buf)

    def lines(self, run_id: str, offset: int = 0) -> list[str]:
        buf = self._lines.get(run_id)
        if not buf:
            return []
        return list(buf)[max(0, offset):]

    def forget(self, run_id: str) -> None:
        self._lines.pop(run_id, None)


run_logs = RunLogBuffer()


class PerRunMemoryHandler(logging.Handler):
    def __init__(self, buffer: RunLogBuffer, session_factory=None):
        super().__init__()
        self._buffer = buffer
        self._session_factory = session_factory

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging
        try:
            run_id = getattr(record, "run_id", None) or run_id_ctx.get()
            if not run_id:
                return

            try:
                text_line = _clean_message(record.getMessage())
            except Exception:
                text_line = _clean_message(str(record.msg))

            if not text_line:
                return

            seq = self._buffer.append(run_id, text_line)

            if self._session_factory:
                extras = {k: v for k, v in record.__dict__.items() if k not in _STD_LOG_FIELDS}
                payload: Optional[dict[str, Any]] = None
                if extras:
                    try:
                        payload = json.loads(json.dumps(extras, default=str))
                    except Exception:
                        payload = {k: str(v) for k, v in extras.items()}

                from .service_db import db_insert_run_log

                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    return
                loop.create_task(
                    db_insert_run_log(
                        run_id=run_id,
                        ts=dt.datetime.now(dt.timezone.utc),
                        seq=seq,
                        line=text_line,
                        level=record.levelname,
                        logger_name=record.name,
                        payload=payload,
                    )
                )
        except Exception:
            self.handleError(record)


def configure_logging(level: int = logging.INFO, session_factory=None) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) for h in root_logger.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        root_logger.addHandler(stream)
    for handler in root_logger.handlers:
        if not any(isinstance(f, RunIdFilter) for f in handler.filters):
            handler.addFilter(RunIdFilter())
    if not any(isinstance(h, PerRunMemoryHandler) for h in root_logger.handlers):
        handler = PerRunMemoryHandler(run_logs, session_factory=session_factory)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.addFilter(RunIdFilter())
        root_logger.addHandler(handler)

    _hijack_library_loggers()
