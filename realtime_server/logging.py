import json
import logging
import time
from typing import Any

# extra_fields keys whose values never reach the log stream
SECRET_FIELDS = frozenset({"private_key", "token", "access_token", "authorization"})
# per-request INFO lines from the HTTP stack would repeat on every poll tick
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "google.auth")

def event_fields(event: str, **fields: Any) -> dict[str, Any]:
    """Build the ``extra=`` mapping for a structured log line."""
    return {"event": event, "extra_fields": fields}

class JsonFormatter(logging.Formatter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)) + f".{int(record.msecs):03d}Z"
        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "svc": self.service,
            "logger": record.name,
            "event": getattr(record, "event", "log"),
            "msg": record.getMessage(),
        }
        for k, v in getattr(record, "extra_fields", {}).items():
            payload[k] = "***" if k.lower() in SECRET_FIELDS else v
        if record.exc_info:
            err = record.exc_info[1]
            payload.setdefault("kind", getattr(err, "kind", type(err).__name__))
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)

def setup_logging(service_name: str, level_name: str = "INFO"):
    root = logging.getLogger()
    if not root.handlers:
        h = logging.StreamHandler()
        h.setFormatter(JsonFormatter(service_name))
        root.addHandler(h)
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
