"""
Process-wide logging setup.

Console output is JSON by default (LOG_FORMAT=text for humans); a log file,
when configured, is always JSON. Registration progress lines are not routed
through here as a global sink: they go to the caller's response via
core.registration.ProgressStream and are mirrored into these loggers with
the request id and hostname attached.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import WatchedFileHandler
from pathlib import Path

# Loggers owned by this project
PROJECT_LOGGERS = ('gateway', 'core', 'config')

# `extra=` keys copied into JSON records when present
CONTEXT_FIELDS = (
    'request_id', 'hostname', 'error_id',
    'method', 'endpoint', 'status_code', 'duration_ms', 'remote_addr',
)

TEXT_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        created = datetime.fromtimestamp(record.created, timezone.utc)
        entry = {
            'timestamp': created.isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        entry.update(
            (name, getattr(record, name)) for name in CONTEXT_FIELDS if hasattr(record, name)
        )
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _handler(handler: logging.Handler, json_format: bool) -> logging.Handler:
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    return handler


def configure_logging(settings, app=None):
    """Point the project loggers (and the Flask app logger) at our handlers.

    Safe to call repeatedly; each call replaces the previous handlers.

    Args:
        settings: AppSettings (log_level, log_format, log_file)
        app: Optional Flask app whose logger will be updated.

    Returns:
        The 'gateway' logger.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers = [_handler(logging.StreamHandler(), settings.log_format == 'json')]
    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        # Reopens the file after logrotate moves it
        handlers.append(_handler(WatchedFileHandler(settings.log_file), json_format=True))

    targets = [logging.getLogger(name) for name in PROJECT_LOGGERS]
    if app is not None:
        targets.append(app.logger)
    for target in targets:
        target.setLevel(level)
        target.handlers = list(handlers)
        target.propagate = False

    return logging.getLogger('gateway')
