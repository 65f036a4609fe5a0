# logging_config.py
from __future__ import annotations

import logging
import sys

APP_LOGGERS = ("app", "llm", "pipeline", "allocator", "marketplace", "gds", "retry", "planner", "security", "config")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(process)d] [rid=%(request_id)s] %(message)s"

# Attributes every LogRecord carries; anything else arrived through `extra`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "request_id"}


class RequestIdFilter(logging.Filter):
    """Inject a default request_id if not provided in log 'extra'."""
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = "-"
        return True


class ContextFormatter(logging.Formatter):
    """
    Appends the structured `extra` context (counts, reason codes, timings) as
    sorted key=value pairs after the message:

        ... [rid=4f2a9c] Validation complete | accepted=7 rejected=1
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        if not context:
            return line
        pairs = " ".join(f"{k}={_render(v)}" for k, v in sorted(context.items()))
        return f"{line} | {pairs}"


def _render(value) -> str:
    text = str(value)
    return repr(text) if (" " in text or not text) else text


def setup_logging(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    # Reuse an existing stream handler (uvicorn may have installed one)
    handler = next((h for h in root.handlers if isinstance(h, logging.StreamHandler)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
        handler.addFilter(RequestIdFilter())

    for name in APP_LOGGERS:
        lg = logging.getLogger(name)
        lg.setLevel(level)
        lg.propagate = True

    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
