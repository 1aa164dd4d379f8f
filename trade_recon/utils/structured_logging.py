"""
Structured logging for imports and broker connections

Provides JSON-formatted logging with structured fields for:
- Connection lifecycle events
- Import windows and merge batches
- Report parsing outcomes
- Timing of remote calls

Credential-like fields are masked before a record is serialized.
"""

import json
import logging
import logging.config
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

SENSITIVE_KEYS = {"password", "credential", "token", "auth-token", "auth_token", "authorization"}
MASK = "***"

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'taskName', 'exc_info',
    'exc_text', 'stack_info', 'message', 'asctime',
}


def mask_sensitive(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of `data` with credential-like values masked, recursively"""
    masked = {}
    for key, value in data.items():
        if str(key).lower() in SENSITIVE_KEYS:
            masked[key] = MASK
        elif isinstance(value, dict):
            masked[key] = mask_sensitive(value)
        else:
            masked[key] = value
    return masked


@dataclass
class ImportContext:
    """Context attached to every structured event"""
    session_id: str
    user_id: Optional[str] = None
    connection_id: Optional[str] = None
    component: Optional[str] = None

    @classmethod
    def create(cls, **kwargs) -> 'ImportContext':
        session_id = kwargs.get(
            'session_id',
            f"import_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}",
        )
        return cls(
            session_id=session_id,
            user_id=kwargs.get('user_id'),
            connection_id=kwargs.get('connection_id'),
            component=kwargs.get('component'),
        )


class StructuredLogFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def __init__(self, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.thread and record.thread != threading.main_thread().ident:
            log_data['thread_id'] = record.thread

        log_data.update(self.extra_fields)

        extra_data = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                extra_data[key] = value
            except (TypeError, ValueError):
                extra_data[key] = str(value)

        if extra_data:
            log_data['extra'] = mask_sensitive(extra_data)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info),
            }

        return json.dumps(log_data, default=str, separators=(',', ':'))


class ImportLogger:
    """
    Structured logger for import and connection events

    Every event carries an `event_type` such as connection.deployed,
    import.window or parse.completed.
    """

    def __init__(self, logger_name: str, context: Optional[ImportContext] = None):
        self.logger = logging.getLogger(logger_name)
        self.context = context or ImportContext.create(component=logger_name.split('.')[-1])

    def _log_structured(self, level: int, event_type: str, message: str, **kwargs):
        log_data = {
            'event_type': event_type,
            'session_id': self.context.session_id,
            'component': self.context.component,
            **kwargs,
        }
        if self.context.user_id:
            log_data['user_id'] = self.context.user_id
        if self.context.connection_id:
            log_data.setdefault('connection_id', self.context.connection_id)
        log_data['event_timestamp'] = datetime.now(timezone.utc).isoformat()

        self.logger.log(level, message, extra=mask_sensitive(log_data))

    def connection_event(self, event_type: str, connection_id: str, message: str, **kwargs):
        """Connection lifecycle event (created, deploying, connected, error, deleted)"""
        level = logging.ERROR if event_type == "error" else logging.INFO
        self._log_structured(level, f"connection.{event_type}", message,
                             connection_id=connection_id, **kwargs)

    def window_event(self, window_index: int, window_count: int, fetched: int, message: str, **kwargs):
        """One history window fetched"""
        self._log_structured(logging.INFO, "import.window", message,
                             window_index=window_index, window_count=window_count,
                             fetched=fetched, **kwargs)

    def merge_event(self, batch_index: int, rows: int, upserted_total: int, message: str, **kwargs):
        """One merge batch committed"""
        self._log_structured(logging.INFO, "import.merge", message,
                             batch_index=batch_index, rows=rows,
                             upserted_total=upserted_total, **kwargs)

    def parse_event(self, event_type: str, message: str, **kwargs):
        """Report parsing outcome"""
        self._log_structured(logging.INFO, f"parse.{event_type}", message, **kwargs)

    def performance_event(self, metric_name: str, value: float, unit: str, message: str, **kwargs):
        self._log_structured(logging.INFO, "performance.metric", message,
                             metric_name=metric_name, metric_value=value,
                             metric_unit=unit, **kwargs)

    def system_event(self, system: str, message: str, **kwargs):
        self._log_structured(logging.INFO, f"system.{system}", message, **kwargs)

    def error_event(self, error_type: str, error_message: str, message: str, **kwargs):
        self._log_structured(logging.ERROR, f"error.{error_type}", message,
                             error_message=error_message, **kwargs)


@contextmanager
def import_timer(logger: ImportLogger, operation: str, **context):
    """Time an operation and emit a performance.metric event when it ends"""
    start_time = time.perf_counter()
    success = True
    error_msg = None
    try:
        yield
    except Exception as e:
        success = False
        error_msg = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.performance_event(
            metric_name=f"{operation}_duration",
            value=duration_ms,
            unit="milliseconds",
            message=f"Completed {operation}",
            operation=operation,
            success=success,
            error_message=error_msg,
            **context,
        )


def configure_structured_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    console_output: bool = True,
    json_format: bool = True,
    extra_fields: Optional[Dict[str, Any]] = None,
):
    """
    Configure logging for the application

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; rotated at 10MB
        console_output: Whether to output to stderr
        json_format: JSON records when True, plain text otherwise
        extra_fields: Fields added to every record
    """
    log_level = os.getenv('TRADE_RECON_LOG_LEVEL', log_level).upper()

    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {},
        'handlers': {},
        'loggers': {
            'trade_recon': {
                'level': log_level,
                'handlers': [],
                'propagate': False,
            },
        },
        'root': {
            'level': log_level,
            'handlers': [],
        },
    }

    if json_format:
        config['formatters']['structured'] = {
            '()': StructuredLogFormatter,
            'extra_fields': extra_fields or {},
        }
        formatter_name = 'structured'
    else:
        config['formatters']['standard'] = {
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'datefmt': '%Y-%m-%d %H:%M:%S',
        }
        formatter_name = 'standard'

    if console_output:
        config['handlers']['console'] = {
            'class': 'logging.StreamHandler',
            'level': log_level,
            'formatter': formatter_name,
            'stream': 'ext://sys.stderr',
        }
        config['loggers']['trade_recon']['handlers'].append('console')
        config['root']['handlers'].append('console')

    if log_file:
        config['handlers']['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': log_level,
            'formatter': formatter_name,
            'filename': log_file,
            'maxBytes': 10 * 1024 * 1024,
            'backupCount': 5,
        }
        config['loggers']['trade_recon']['handlers'].append('file')
        config['root']['handlers'].append('file')

    logging.config.dictConfig(config)

    ImportLogger("trade_recon.logging").system_event(
        "logging",
        "Structured logging configured",
        log_level=log_level,
        json_format=json_format,
        log_file=log_file,
    )


def get_import_logger(name: str, context: Optional[ImportContext] = None) -> ImportLogger:
    return ImportLogger(name, context)
