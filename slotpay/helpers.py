import time
import re
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional


_CODE_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
# no 0/O, 1/I: pickup codes get read out loud at the counter
_PICKUP_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def _base36(n: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = digits[r] + out
        if n == 0:
            return out


def _random_chars(k: int, alphabet: str = _CODE_CHARS) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(k))


def new_order_id(prefix: str) -> str:
    """Human readable order number, e.g. ``TIX-1760780000123-Q7K2M``."""
    return f"{prefix}-{int(now_ts() * 1000)}-{_random_chars(5)}"


def new_ticket_code() -> str:
    return f"TKT-{_random_chars(8)}-{_base36(int(now_ts() * 1000))}"


def new_pickup_code() -> str:
    return f"PU-{_random_chars(6, _PICKUP_CHARS)}"
