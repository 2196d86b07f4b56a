from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

# Structured context accepted through ``extra={...}``.
CONTEXT_KEYS = (
    "service",
    "run_id",
    "local_request_id",
    "remote_uid",
    "phase",
    "previous_phase",
    "code",
    "status_text",
    "status_name",
    "remote_message",
    "timestamp",
    "elapsed_ms",
    "has_pdf",
    "pdf_url",
    "original_files_url",
    "cost_credits",
    "balance_credits",
    "failure_reason",
    "verdict",
    "endpoint",
    "deadline_at",
    "method",
    "url",
    "attempt",
    "expired",
    "error",
    "detail",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
