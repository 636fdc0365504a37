import time
import uuid


def now_ts() -> float:
    return time.time()


def new_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex
    return f"{prefix}-{token[:12]}" if prefix else token


def is_blank(value: str | None) -> bool:
    return value is None or not value.strip()
