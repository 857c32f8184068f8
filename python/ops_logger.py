"""
Operational Event Logging Module

Structured channel for failures that cannot be recorded in the audit
trail itself:
- Audit events that failed to persist
- Audit events dropped because the write channel was full
- Screening provider failures and timeouts
- Batch sweeps aborted before completion

Values are sanitized before serialization to prevent log injection.
"""

import logging
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field


def sanitize_for_logging(text: str, max_length: int = 500) -> str:
    """Sanitize a value for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: Value to sanitize
        max_length: Maximum length kept

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    if len(sanitized) > max_length:
        return sanitized[:max_length] + "...(truncated)"
    return sanitized


@dataclass
class OperationalEvent:
    """Structured operational event for logging"""
    event_type: str  # e.g., AUDIT_WRITE_FAILED, AUDIT_EVENT_DROPPED, PROVIDER_FAILURE
    severity: str  # WARNING, ERROR, CRITICAL
    source: str = ""  # Module/function that detected the event
    message: str = ""
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'source': self.source,
            'message': self.message,
            'context': self.context
        }

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False)


class OperationalLogger:
    """Writes operational events as JSON lines

    Features:
    - Separate operations.log file
    - JSON-formatted events for easy parsing
    - Automatic sanitization of context values
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.WARNING,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """Initialize operational logger

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to operations.log file
        """
        self.logger = logging.getLogger('operations')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        formatter = logging.Formatter(
            '%(asctime)s - OPERATIONS - %(levelname)s - %(message)s'
        )

        if enable_file:
            self.log_dir = Path(log_dir)
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_dir / "operations.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize all values in a context dictionary for safe logging

        Args:
            context: Dictionary with context data

        Returns:
            Sanitized dictionary safe for JSON logging
        """
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = sanitize_for_logging(str(key), max_length=100) or "unknown"

            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else sanitize_for_logging(str(item), max_length=200)
                    for item in value
                ]
            else:
                sanitized[safe_key] = sanitize_for_logging(str(value), max_length=200)

        return sanitized

    def log_event(
        self,
        event_type: str,
        severity: str = "ERROR",
        source: str = "",
        message: str = "",
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an operational event

        Args:
            event_type: Type of event
            severity: WARNING, ERROR, or CRITICAL
            source: Source module/function
            message: Description (will be sanitized)
            context: Additional context (will be sanitized)
        """
        event = OperationalEvent(
            event_type=event_type,
            severity=severity,
            source=source,
            message=sanitize_for_logging(message),
            context=self._sanitize_context(context)
        )

        if severity == "CRITICAL":
            self.logger.critical(event.to_json())
        elif severity == "ERROR":
            self.logger.error(event.to_json())
        else:
            self.logger.warning(event.to_json())

    def log_audit_write_failed(self, action: str, subject_id: str, error: str) -> None:
        self.log_event(
            event_type="AUDIT_WRITE_FAILED",
            severity="ERROR",
            source="audit_recorder",
            message=error,
            context={"action": action, "subject_id": subject_id}
        )

    def log_audit_event_dropped(self, action: str, subject_id: str, queue_size: int) -> None:
        self.log_event(
            event_type="AUDIT_EVENT_DROPPED",
            severity="WARNING",
            source="audit_recorder",
            message="Audit write channel full",
            context={"action": action, "subject_id": subject_id, "queue_size": queue_size}
        )

    def log_provider_failure(self, entity_id: str, trigger: str, error: str) -> None:
        self.log_event(
            event_type="PROVIDER_FAILURE",
            severity="WARNING",
            source="screening_orchestrator",
            message=error,
            context={"entity_id": entity_id, "trigger": trigger}
        )

    def log_batch_aborted(self, processed: int, selected: int, reason: str) -> None:
        self.log_event(
            event_type="BATCH_ABORTED",
            severity="WARNING",
            source="batch_worker",
            message=reason,
            context={"processed": processed, "selected": selected}
        )


# Global operational logger instance
_ops_logger: Optional[OperationalLogger] = None


def get_ops_logger(
    log_dir: str = "logs",
    enable_console: bool = False,
    enable_file: bool = True
) -> OperationalLogger:
    """Get or create the global operational logger instance

    Args:
        log_dir: Directory for log files
        enable_console: Also output to console
        enable_file: Write to operations.log

    Returns:
        OperationalLogger instance
    """
    global _ops_logger
    if _ops_logger is None:
        _ops_logger = OperationalLogger(
            log_dir=log_dir,
            enable_console=enable_console,
            enable_file=enable_file
        )
    return _ops_logger


def reset_ops_logger() -> None:
    """Reset the global operational logger (for testing)"""
    global _ops_logger
    _ops_logger = None
