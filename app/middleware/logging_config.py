"""
Logging setup for the governance API.

Two output shapes share one set of structured context keys:
  * readable: coloured single line for local development
  * json:     one object per line for log shippers (production)

Services attach context with ``logger.info(..., extra={...})``. Only the
keys listed in CONTEXT_KEYS are copied into the output; anything else on
the record is ignored.
"""

import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_KEYS = (
    "request_id",
    "user_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "project_id",
    "entity_type",
    "entity_id",
    "gate",
    "event_type",
    "diagnostic_code",
    "details",
)

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic.runtime.migration")


def record_context(record: logging.LogRecord) -> dict:
    """Return the structured context fields present on *record*."""
    ctx = {}
    for key in CONTEXT_KEYS:
        value = getattr(record, key, None)
        if value is not None:
            ctx[key] = value
    return ctx


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(record_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    LEVEL_COLOURS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        ctx = record_context(record)
        tags = []
        if "diagnostic_code" in ctx:
            tags.append(ctx["diagnostic_code"])
        if "project_id" in ctx:
            tags.append(f"project={ctx['project_id']}")
        if "entity_type" in ctx:
            tags.append(f"{ctx['entity_type']}#{ctx.get('entity_id', '?')}")
        tag_str = f" [{' '.join(str(t) for t in tags)}]" if tags else ""
        timing = f" ({ctx['duration_ms']:.0f}ms)" if "duration_ms" in ctx else ""

        line = (
            f"{stamp} {colour}{record.levelname[:4]}{self.RESET} "
            f"{record.name}{tag_str} {record.getMessage()}{timing}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    ``LOG_LEVEL`` comes from app config; JSON output is used whenever the app
    runs outside debug and testing mode.
    """
    testing = bool(app.config.get("TESTING"))
    use_json = not testing and not app.config.get("DEBUG")

    level_name = str(app.config.get("LOG_LEVEL") or ("INFO" if use_json else "DEBUG")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())

    # Re-running the factory (tests) must not stack handlers
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("logging ready (level=%s, json=%s)", level_name, use_json)
