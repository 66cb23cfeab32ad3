import time
import re
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional

from .config import MINOR_UNITS_PER_UNIT


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def local_path(target: Optional[str], default: str = "/admin") -> str:
    # only same-site paths; "//host" and "/\host" are treated as offsite
    if not target or not target.startswith("/") or target[1:2] in ("/", "\\"):
        return default
    return target


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    minor = (money(amount) * MINOR_UNITS_PER_UNIT).to_integral_value(
        ROUND_HALF_UP
    )
    return int(minor)


def new_reference(event_id: str, user_id: str) -> str:
    # ids + wall clock for humans, random suffix for uniqueness
    return "tix_{}_{}_{}_{}".format(
        event_id, user_id[:8], int(now_ts()), secrets.token_hex(8)
    )


def qr_payload(ticket_id: int, event_id: str, user_id: str) -> str:
    return f"TIX:{ticket_id}:{event_id}:{user_id}"
