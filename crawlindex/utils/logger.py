"""
Logging utilities for the crawl index pipeline.
"""

import logging
import logging.handlers
import json
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Loggers that only matter when they complain
QUIET_LOGGERS = ('aiohttp', 'asyncio')


class JSONFormatter(logging.Formatter):
    """Renders each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        # url/source context attached by CrawlerLogAdapter
        entry.update(getattr(record, 'extra_fields', {}))

        return json.dumps(entry, ensure_ascii=False)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Logger adapter that tags records with crawl context such as url and source."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Merge adapter context into the record's extra_fields."""
        extra = kwargs.get('extra') or {}
        extra_fields = dict(self.extra)
        extra_fields.update(extra.pop('extra_fields', {}))
        extra['extra_fields'] = extra_fields
        kwargs['extra'] = extra
        return msg, kwargs


class PerformanceFilter(logging.Filter):
    """Drops access logs and connection-pool chatter from HTTP libraries."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = tuple(suppress_modules or ('aiohttp.access', 'aiohttp.client'))

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(self.suppress_modules):
            return False
        return not (record.levelno == logging.DEBUG
                    and 'connection pool' in record.getMessage().lower())


def _rotating_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                      formatter: logging.Formatter,
                      log_filter: Optional[logging.Filter] = None) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    if log_filter is not None:
        handler.addFilter(log_filter)
    return handler


def setup_logging(config: Dict[str, Any],
                  enable_json: Optional[bool] = None,
                  enable_performance_filtering: bool = True) -> logging.Logger:
    """
    Configure the root logger for a crawl.

    Installs three handlers: stdout at INFO, a rotating log file at DEBUG
    and a rotating ``errors.log`` next to it at ERROR.

    Args:
        config: the ``logging`` section (level, file, format, json)
        enable_json: force JSON output on or off; defaults to ``config['json']``
        enable_performance_filtering: drop noisy HTTP library records

    Returns:
        The root logger
    """
    level_name = config.get('level', 'INFO')
    log_file = Path(config.get('file', 'logs/crawlindex.log'))
    log_file.parent.mkdir(parents=True, exist_ok=True)
    error_log_file = log_file.parent / 'errors.log'

    if enable_json is None:
        enable_json = bool(config.get('json', False))
    formatter = JSONFormatter() if enable_json else logging.Formatter(config.get('format', DEFAULT_FORMAT))
    log_filter = PerformanceFilter() if enable_performance_filtering else None

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    if log_filter is not None:
        console_handler.addFilter(log_filter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(_rotating_handler(log_file, logging.DEBUG, 50 * 1024 * 1024, 5,
                                             formatter, log_filter))
    root_logger.addHandler(_rotating_handler(error_log_file, logging.ERROR, 10 * 1024 * 1024, 3,
                                             formatter))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging to {log_file} (errors: {error_log_file}) at level {level_name}")
    return root_logger


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """Return a logger whose records all carry ``extra_context``."""
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)
