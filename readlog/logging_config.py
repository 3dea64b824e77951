import logging
import json
import re
import sys

from readlog.utils import utcnow

SECRET_RE = re.compile(r"(authorization|api[_-]?key|password|token|secret|whsec_\w+|sk_(?:live|test)_\w+)[\"':= ]+([^,\s]+)", re.I)

EXTRA_FIELDS = (
    "request_id", "path", "method", "status", "latency_ms",
    "user_id", "tier", "event_id",
)

def redact_secrets(msg):
    return SECRET_RE.sub(r"\1=***", msg)

class JsonLogFormatter(logging.Formatter):
    def format(self, record):
        log = {
            "ts": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_secrets(str(record.getMessage())),
        }
        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log[field] = value
        if record.exc_info:
            log["exc"] = redact_secrets(self.formatException(record.exc_info))
        return json.dumps(log, default=str)

def setup_logging(level=logging.INFO):
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

def get_logger(name="readlog"):
    return logging.getLogger(name)
