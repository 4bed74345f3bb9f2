"""One JSON object per line on stdout, tagged with the process that wrote it.

The API and the scheduler share the format; ``service`` tells them apart
in the aggregated stream. Structured fields go under ``data`` via
:func:`log_with_data`.
"""
import json
import logging
import sys
from datetime import datetime, timezone

# libraries that are chatty at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "apscheduler", "urllib3")


class JSONFormatter(logging.Formatter):

    def __init__(self, service: str = "api", env: str = "development"):
        super().__init__()
        self.service = service
        self.env = env

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "env": self.env,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.module}:{record.lineno}"
        data = getattr(record, "extra_data", None)
        if data:
            entry["data"] = data
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False, service: str = "api", env: str = "development"):
    """Route the root logger to stdout as JSON; DEBUG also unmutes QUIET_LOGGERS"""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service=service, env=env))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_with_data(logger: logging.Logger, level: int, message: str, **data):
    logger.log(level, message, extra={"extra_data": data})
