"""Structured logging configuration.

Features:
- JSON formatted logs for aggregation
- Rollout fields (feature key, policy version, state) passed via ``extra=``
- Exception details
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Structured fields emitted by the rollout components
_EXTRA_FIELDS = (
    "feature_key",
    "policy_version",
    "previous_version",
    "rollout_percent",
    "state",
    "from_state",
    "reason",
    "attempt",
    "error_code",
    "path",
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "rollout-control",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        for attr in _EXTRA_FIELDS:
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True, stream: Optional[Any] = None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler = logging.StreamHandler(stream or sys.stdout)
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root.handlers = [handler]
