import logging
import re
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path


_SECRET_QUERY_RE = re.compile(r"(?i)\b(token|session|password|secret)=([^&\s]+)")


def redact_secrets(text: str) -> str:
    """Mask token-like query parameters, e.g. token=abc -> token=[REDACTED]."""
    return _SECRET_QUERY_RE.sub(lambda m: f"{m.group(1)}=[REDACTED]", str(text))


class RedactSecretsFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # uvicorn's AccessFormatter unpacks args positionally: keep their shape
        if isinstance(record.args, tuple) and record.args:
            record.args = tuple(redact_secrets(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: redact_secrets(v) if isinstance(v, str) else v for k, v in record.args.items()}
        elif isinstance(record.msg, str):
            record.msg = redact_secrets(record.msg)
        return True


def setup_logging(service_name: str, log_dir: str, level: str = "INFO") -> None:
    # Ensure directory exists
    p = Path(log_dir)
    p.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level.upper())

    # Clear existing handlers to avoid duplicates in reload
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt_human = logging.Formatter(
        fmt=f"%(asctime)s %(levelname)s {service_name} %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    redact = RedactSecretsFilter()

    ch = logging.StreamHandler()
    ch.setLevel(level.upper())
    ch.setFormatter(fmt_human)
    ch.addFilter(redact)
    root.addHandler(ch)

    # Daily rotation, keep 7 backups
    fh = TimedRotatingFileHandler(
        filename=str(p / f"{service_name}.log"), when="D", interval=1, backupCount=7, encoding="utf-8"
    )
    fh.setLevel(level.upper())
    fh.setFormatter(fmt_human)
    fh.addFilter(redact)
    root.addHandler(fh)

    # uvicorn access lines carry the raw query string (consume links)
    logging.getLogger("uvicorn.access").addFilter(redact)

    logging.getLogger(__name__).info("logging initialized", extra={"service": service_name})
