import time
import re
import secrets
import hmac
from datetime import datetime, timezone
from typing import Optional

SHORT_ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_http_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return re.match(r"^https?://\S+$", url, re.IGNORECASE) is not None


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def random_short_id(length: int = 6) -> str:
    return "".join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(length))


def normalize_short_id(short_id: Optional[str]) -> str:
    return (short_id or "").strip().lower()


def normalize_device_id(device_id: Optional[str]) -> str:
    return str(device_id or "").strip()


def normalize_currency(currency: Optional[str]) -> str:
    return str(currency or "EUR").strip().upper() or "EUR"


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
