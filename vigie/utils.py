import re
from datetime import datetime, timezone
from json import dumps
from logging import Formatter, LogRecord, StreamHandler, basicConfig, getLogger
from secrets import token_hex
from typing import Optional
from zoneinfo import ZoneInfo

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
STRUCTURED_FIELDS = ("container", "container_id", "image", "kind")
LOG = getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


class FieldFormatter(Formatter):
    def format(self, record: LogRecord) -> str:
        message = super().format(record)
        extras = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        if extras:
            return f"{message} {' '.join(extras)}"
        return message


class JSONFormatter(Formatter):
    def format(self, record: LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


def configure_logging(level: str, fmt: str = "plain") -> None:
    handler = StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(FieldFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    basicConfig(level=level, handlers=[handler], force=True)


def log_fields(
    container_id: Optional[str] = None,
    container: Optional[str] = None,
    image: Optional[str] = None,
    kind: Optional[str] = None,
) -> dict:
    return {
        "container_id": short_id(container_id) if container_id else None,
        "container": container,
        "image": image,
        "kind": kind,
    }


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_tz(tz_name: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(tz_name))
    except Exception as error:
        LOG.warning("Falling back to UTC; invalid timezone %s: %s", tz_name, error)
        return datetime.now(timezone.utc)


def short_id(identifier: Optional[str]) -> str:
    if identifier is None:
        return "unknown"
    return identifier.split(":")[-1][:12]


def rand_name(length: int = 32) -> str:
    return token_hex(length // 2)


def parse_duration(value: str) -> float:
    cleaned = value.strip().lower()
    if not cleaned:
        raise ValueError("empty duration")
    try:
        return float(cleaned)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(cleaned):
        if match.start() != position:
            raise ValueError(f"invalid duration {value!r}")
        amount = float(match.group(1))
        unit = match.group(2)
        if unit == "ms":
            total += amount / 1000
        elif unit == "s":
            total += amount
        elif unit == "m":
            total += amount * 60
        else:
            total += amount * 3600
        position = match.end()
    if position != len(cleaned):
        raise ValueError(f"invalid duration {value!r}")
    return total


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    minutes, remainder = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    text = f"{remainder:.3f}".rstrip("0").rstrip(".") + "s"
    if hours:
        return f"{hours}h{minutes}m{text}"
    if minutes:
        return f"{minutes}m{text}"
    return text

