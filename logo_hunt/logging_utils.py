import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Context var to carry a request id through the request lifecycle
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# structured fields picked up from `extra=` on log calls
EXTRA_FIELDS = (
    "path",
    "method",
    "status",
    "duration_ms",
    "client",
    "company_id",
    "piece_index",
    "requested_index",
    "grid_size",
    "completion_time",
    "qr_id",
    "started",
    "event",
    "ws_count",
    "errors",
    "error",
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                payload[key] = val
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Human-friendly formatter for local runs; structured fields go in key=value form."""

    RESET = "\033[0m"
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self.use_color or not color:
            return text
        return f"{color}{text}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        parts: List[str] = [
            self._color(record.levelname, self.COLORS.get(record.levelname, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._color(f"rid={rid[:8]}", "\033[35m"))
        parts.append(self._color(record.name, "\033[34m"))
        parts.append(record.getMessage())

        fields = []
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                fields.append(f"{key}={val}")
        if fields:
            parts.append(self._color(" ".join(fields), "\033[90m"))

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _isatty(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except ValueError:
        # closed stream
        return False


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure root and uvicorn loggers.

    LOG_FORMAT=pretty|json picks the formatter; otherwise pretty on a TTY, JSON elsewhere.
    LOG_COLOR=0 disables ANSI colors in pretty mode.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt_env = os.getenv("LOG_FORMAT", "").lower()
    color_env = os.getenv("LOG_COLOR", "1").lower()
    use_pretty = (fmt_env == "pretty") or (fmt_env == "" and _isatty(sys.stdout))
    use_color = use_pretty and color_env not in ("0", "false", "no")

    handler = logging.StreamHandler(sys.stdout)
    if use_pretty:
        handler.setFormatter(ColorFormatter(use_color=use_color))
    else:
        handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "logo_hunt") -> logging.Logger:
    return logging.getLogger(name)
