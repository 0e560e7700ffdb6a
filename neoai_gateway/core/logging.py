import json
import logging
from datetime import UTC, datetime

from neoai_gateway.redaction.scanner import mask_for_log

_STRUCTURED_FIELDS = (
    "request_id",
    "user_id",
    "session_id",
    "model",
    "backend",
    "stage",
    "code",
    "status_code",
    "error_id",
    "method",
    "path",
    "user_agent",
    "latency_ms",
    "message_chars",
    "history_length",
    "output_chars",
    "types",
    "count",
    "limit",
    "window",
    "retry_after",
    "task",
    "key_count",
    "error",
)


def _masked(value: object) -> object:
    if isinstance(value, str):
        return mask_for_log(value)
    if isinstance(value, list):
        return [_masked(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "level": record.levelname,
            "message": mask_for_log(record.getMessage()),
            "logger": record.name,
        }
        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = _masked(value)
        if record.exc_info:
            payload["exception"] = mask_for_log(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(log_level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())
