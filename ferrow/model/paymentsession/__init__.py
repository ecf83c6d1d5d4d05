import os
from typing import Optional
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated

BACKEND = os.getenv("PAYSESSION_BACKEND", "redis").lower()  # 'redis' | 'sql'

if BACKEND == "sql":
    from ._sql import PaymentSessionStore as _PaymentSessionStore
else:
    from ._redis import PaymentSessionStore as _PaymentSessionStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 24 * 3600,
              gated: Optional[Gated] = None):
    if BACKEND == "sql":
        if db is None:
            raise RuntimeError(
                "PaymentSessionStore(sql) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "PaymentSessionStore(sql) requires gated=Gated"
            )
        return _PaymentSessionStore(db=db, ttl_seconds=ttl_seconds,
                                    gated=gated)
    if r is None:
        raise RuntimeError(
            "PaymentSessionStore(redis) requires r=redis.Redis"
        )
    return _PaymentSessionStore(r=r, ttl_seconds=ttl_seconds)


def event_key(payload: dict) -> Optional[str]:
    """Idempotency key for a gateway notification, None if unidentifiable."""
    txid = payload.get("transaction_id")
    status = payload.get("transaction_status")
    if not txid or not status:
        return None
    return f"{txid}:{status}:{payload.get('status_code', '')}"


PaymentSessionStore = _PaymentSessionStore
__all__ = ["PaymentSessionStore", "new_store", "event_key", "BACKEND"]
