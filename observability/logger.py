"""
Observability Layer: Structured Logging & timings.

Responsibility:
- Log workflow execution events as one JSON line each
- Time operations such as scheduler ticks and message dispatch
- Carry a trace_id across one workflow execution

Module loggers stay in place for diagnostics; this covers execution events.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any

logger = logging.getLogger("observability")


class Observability:
    """Structured logger for workflow execution events."""

    def __init__(self, component: str = "workflow", trace_id: str | None = None):
        self.component = component
        self.trace_id = trace_id or uuid.uuid4().hex[:12]

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        """Log a structured event."""
        entry = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "component": self.component,
            "trace_id": self.trace_id,
            "event": event_type,
            "level": level,
            **payload,
        }
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, ensure_ascii=False, default=str))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None):
        """Context manager to measure execution time of an operation."""
        start_time = time.perf_counter()
        meta = metadata or {}
        success = True
        error = None
        try:
            yield
        except Exception as e:
            success = False
            error = str(e)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": round(duration_ms, 2),
                    "success": success,
                    "error": error,
                    **meta,
                },
                level="DEBUG",
            )

    def span(self, trace_id: str) -> "Observability":
        """Create a logger for one execution sharing the component name."""
        return Observability(self.component, trace_id=trace_id)
