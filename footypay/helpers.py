import hashlib
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from .errors import ValidationError


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def to_minor_units(price) -> int:
    """Convert a major-unit price to integer minor units, rounding half up.

    The value goes through ``str`` first so a float such as 4.995 is read as
    written rather than as its binary approximation (4.99499...).
    """
    try:
        d = Decimal(str(price))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid price: {price!r}")
    if not d.is_finite():
        raise ValidationError(f"invalid price: {price!r}")
    cents = (d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def clean_name(name: Optional[str], max_len: int = 80) -> str:
    name = " ".join((name or "").split())
    if not name:
        raise ValidationError("name is required")
    if len(name) > max_len:
        raise ValidationError(f"name must be at most {max_len} characters")
    return name


def join_idempotency_key(game_id: str, name: str, amount: int,
                         window: int = 600) -> str:
    """Stable across double-clicks inside one ``window``-second bucket.

    The name goes in exactly as it is sent to the processor: one key must
    always describe one request.
    """
    bucket = int(now_ts() // max(1, window))
    raw = f"{game_id}|{name}|{amount}|{bucket}".encode()
    return f"join:{hashlib.sha256(raw).hexdigest()}"
