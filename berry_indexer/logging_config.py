"""
Logging Infrastructure

Structured JSON logging through structlog with rotating files. Records from
the ``reconciliation`` logger (failed events, orphaned settlements, status
transitions) are also written to a dedicated audit file.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional
import structlog
from structlog.types import EventDict, Processor

AUDIT_LOGGER = "reconciliation"
MAX_LOG_BYTES = 100 * 1024 * 1024  # 100 MB


# ============================================================================
# Custom Processors
# ============================================================================

def add_logger_fields(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag the record with its logger name and level"""
    event_dict["module"] = logger.name
    event_dict["level"] = method_name.upper()
    return event_dict


def normalize_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Fold ``extra=`` into ``context`` so every record has one context object"""
    context = dict(event_dict.pop("context", None) or {})
    extra = event_dict.pop("extra", None)
    if extra:
        context.update(extra)
    event_dict["context"] = context
    return event_dict


class _AuditFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.name == AUDIT_LOGGER


# ============================================================================
# Logging Configuration
# ============================================================================

class LoggingConfig:
    """
    Process-wide logging setup.

    Args:
        log_dir: Directory for indexer.log and reconciliation.log
        log_level: Minimum level for console and indexer.log
        enable_file: False keeps output on stdout only (tests, one-off scripts)
    """

    def __init__(
        self,
        log_dir: Path = Path("logs"),
        log_level: str = "INFO",
        enable_file: bool = True
    ):
        self.log_dir = Path(log_dir)
        self.log_level = log_level.upper()
        self.enable_file = enable_file

        if self.enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._configure_structlog()
        self._configure_handlers()

    def _configure_structlog(self):
        processors: list[Processor] = [
            structlog.contextvars.merge_contextvars,
            add_logger_fields,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            normalize_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(default=str)
        ]

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(
                logging.getLevelName(self.log_level)
            ),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

    def _rotating_handler(self, filename: str, level, backup_count: int) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / filename,
            maxBytes=MAX_LOG_BYTES,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter('%(message)s'))
        return handler

    def _configure_handlers(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console_handler)

        if not self.enable_file:
            return

        root_logger.addHandler(self._rotating_handler("indexer.log", self.log_level, backup_count=10))

        audit_handler = self._rotating_handler("reconciliation.log", self.log_level, backup_count=50)
        audit_handler.addFilter(_AuditFilter())
        root_logger.addHandler(audit_handler)

    def get_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        return structlog.get_logger(name)


# ============================================================================
# Global Logger Instance
# ============================================================================

_logging_config: Optional[LoggingConfig] = None


def init_logging(
    log_dir: Path = Path("logs"),
    log_level: str = "INFO",
    enable_file: bool = True
) -> LoggingConfig:
    """
    Initialize global logging configuration.

    Args:
        log_dir: Directory for log files
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_file: Write rotating log files in addition to stdout

    Returns:
        LoggingConfig instance
    """
    global _logging_config
    _logging_config = LoggingConfig(
        log_dir=log_dir,
        log_level=log_level,
        enable_file=enable_file
    )
    return _logging_config


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger by name.

    Falls back to console-only logging when init_logging() was never called.
    """
    if _logging_config is None:
        init_logging(enable_file=False)
    return _logging_config.get_logger(name)


# ============================================================================
# Reconciliation Audit Records
# ============================================================================

def log_event_failure(
    logger: structlog.stdlib.BoundLogger,
    event_type: str,
    event_id: str,
    block_number: int,
    error: str
):
    """
    Record an event whose required writes failed.

    Args:
        logger: Audit logger
        event_type: Event variant name
        event_id: "{tx_hash}-{log_index}" of the event
        block_number: Block the event was emitted in
        error: Error description
    """
    logger.error(
        "event_failed",
        context={
            "event_type": event_type,
            "event_id": event_id,
            "block_number": block_number,
            "error": error
        }
    )


def log_orphaned_settlement(
    logger: structlog.stdlib.BoundLogger,
    noun_id: int,
    tx_hash: str,
    block_number: int
):
    """Record a settlement whose Noun row did not exist when it was applied"""
    logger.warning(
        "orphaned_settlement",
        context={
            "noun_id": noun_id,
            "tx_hash": tx_hash,
            "block_number": block_number
        }
    )


def log_status_transition(
    logger: structlog.stdlib.BoundLogger,
    proposal_id: int,
    from_status: Optional[str],
    to_status: str,
    source_event: str,
    applied: bool,
    context: Optional[Dict[str, Any]] = None
):
    """Record a proposal status change request and whether it was applied"""
    logger.info(
        "proposal_status_transition",
        context={
            "proposal_id": proposal_id,
            "from_status": from_status,
            "to_status": to_status,
            "source_event": source_event,
            "applied": applied,
            **(context or {})
        }
    )
