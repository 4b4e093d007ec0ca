"""Run logging: readable console output plus JSON files under ``logs/``.

Lines logged through :func:`get_logger` carry run context (``run_id``,
``page_number``, ``url``). The JSON formatter lifts those onto every record,
and the console format prints the run id so interleaved runs can be told apart.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from carscout.config import settings

RUN_CONTEXT_FIELDS = ("run_id", "page_number", "url")

CONSOLE_FORMAT = "%(asctime)s - [%(run_id)s] %(name)s - %(levelname)s - %(message)s"
JSON_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"

# Third-party loggers that flood DEBUG output during page visits
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "playwright")


class RunContextFilter(logging.Filter):
    """Gives every record a ``run_id`` so the console format never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = "-"
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with UTC timestamp, source location and run context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        for name in RUN_CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value not in (None, "-"):
                log_record[name] = value
            else:
                log_record.pop(name, None)


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RunContextFilter())
    return handler


def setup_logging(base_dir: str | Path | None = None):
    """Configure the root logger for a run.

    Args:
        base_dir: Directory that receives ``logs/``. Defaults to the
                  current working directory.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    console_handler.addFilter(RunContextFilter())
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter(JSON_FORMAT)
    root_logger.addHandler(_file_handler(logs_dir / "app.log", logging.DEBUG, json_formatter))
    root_logger.addHandler(_file_handler(logs_dir / "error.log", logging.ERROR, json_formatter))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adds the adapter's context to each call's ``extra``; per-call values win."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger bound to run context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. ``run_id="ab12"`` or ``page_number=5``

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
