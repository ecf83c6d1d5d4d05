import hmac
import math
import random
import re
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

_B36 = string.digits + string.ascii_uppercase


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


def new_id() -> str:
    return uuid.uuid4().hex


def new_order_number(ts: float | None = None) -> str:
    """ORD-<epoch ms>-<9 base36 chars>"""
    ms = int((ts if ts is not None else now_ts()) * 1000)
    suffix = "".join(random.choices(_B36, k=9))
    return f"ORD-{ms}-{suffix}"


def as_int(value, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def clamp_page(page: int | None, limit: int | None,
               max_limit: int = 100) -> tuple[int, int, int]:
    """Returns (page, limit, offset), with page >= 1 and 1 <= limit <= max."""
    page = max(1, page or 1)
    limit = max(1, min(limit or 10, max_limit))
    return page, limit, (page - 1) * limit
