"""Structured audit logging for emailsnap."""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StructuredLogger:
    """JSON-lines audit trail for operators.

    With no log file configured every call is a no-op, so components can
    always be handed an instance.
    """

    def __init__(self, log_file: str | None = None):
        """Initialize structured logger.

        Args:
            log_file: Path to JSON log file for audit trail
        """
        self.log_file = Path(log_file) if log_file else None
        self._lock = threading.Lock()

    def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        """Log a structured event.

        Args:
            event_type: Type of event (e.g., 'poll_cycle', 'ai_failure')
            data: Event data
        """
        if not self.log_file:
            return

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **data,
        }

        try:
            with self._lock, open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(event, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error(f"Failed to write to audit log: {e}")

    def log_poll_cycle(self, fetched: int, inserted: int, notified: int) -> None:
        """Log a completed poll cycle."""
        self.log_event(
            "poll_cycle",
            {"fetched": fetched, "inserted": inserted, "notified": notified},
        )

    def log_ai_failure(self, stage: str, error: str, message_id: str | None = None) -> None:
        """Log an AI call that was absorbed by a fallback.

        Args:
            stage: Where the call happened ('classify', 'classify_batch', 'analyze')
            error: Error description
            message_id: Message the call was about, if any
        """
        self.log_event(
            "ai_failure",
            {
                "stage": stage,
                "message_id": self._sanitize_for_json(message_id) if message_id else None,
                "error": self._sanitize_for_json(error),
            },
        )

    def log_backoff(self, failures: int, interval: float, error_kind: str) -> None:
        """Log the scheduler switching to a backoff interval."""
        self.log_event(
            "backoff",
            {"failures": failures, "interval": interval, "error_kind": error_kind},
        )

    def log_error(self, error_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Log error event.

        Args:
            error_type: Type of error
            message: Error message
            details: Additional error details
        """
        self.log_event(
            "error",
            {
                "error_type": error_type,
                "message": self._sanitize_for_json(message),
                "details": details or {},
            },
        )

    def log_startup(self, config: dict[str, Any]) -> None:
        """Log application startup.

        Args:
            config: Sanitized configuration
        """
        self.log_event("startup", config)

    def log_shutdown(self, reason: str = "normal") -> None:
        """Log application shutdown."""
        self.log_event("shutdown", {"reason": reason})

    def _sanitize_for_json(self, value: str) -> str:
        """Strip control characters and cap length."""
        sanitized = "".join(c for c in value if c.isprintable() or c in [" ", "\t"])
        if len(sanitized) > 500:
            sanitized = sanitized[:497] + "..."
        return sanitized
