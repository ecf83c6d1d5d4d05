# model/paymentsession/_redis.py
from __future__ import annotations
from typing import Optional, Dict, Any, Tuple, List
import time
import redis.asyncio as redis


# ---- keys
def k_ps(token: str) -> str: return f"ferrow:ps:{token}"
def k_idemp(evt: str) -> str: return f"ferrow:idemp:{evt}"


PENDING_INDEX = "ferrow:pendings"
IDEMPOTENCY_TTL = 7 * 24 * 3600


class PaymentSessionStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def save_payment_session(
            self, token: str, mapping: Dict[str, Any]) -> None:
        # values must be strings for decode_responses=True
        m = {k: "" if v is None else str(v) for k, v in mapping.items()}
        m.setdefault("created_at", str(time.time()))
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(token), mapping=m)
        pipe.expire(k_ps(token), self.ttl + 60)
        pipe.zadd(PENDING_INDEX, {token: float(m["created_at"])})
        await pipe.execute()

    async def get_payment_session(self, token: str
                                  ) -> Optional[Dict[str, str]]:
        h = await self.r.hgetall(k_ps(token))
        return h or None

    async def remove_pending(self, token: str) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.zrem(PENDING_INDEX, token)
        pipe.delete(k_ps(token))
        await pipe.execute()

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True the first time evt_id is seen (and for a missing id)."""
        if not evt_id:
            return True
        ok = await self.r.set(k_idemp(evt_id), "1", nx=True,
                              ex=IDEMPOTENCY_TTL)
        return bool(ok)

    async def forget_event(self, evt_id: Optional[str]) -> None:
        # lets the gateway's retry through after a failed apply
        if evt_id:
            await self.r.delete(k_idemp(evt_id))

    async def _list_recent_tokens(
            self, limit: int = 200
    ) -> Tuple[int, List[str]]:
        total = await self.r.zcard(PENDING_INDEX)
        tokens = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))
        return total, tokens

    async def get_recent_payment_sessions(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total, tokens = await self._list_recent_tokens(limit=limit)
        pipe = self.r.pipeline()
        for token in tokens:
            pipe.hgetall(k_ps(token))
        rows = await pipe.execute()

        now = time.time()
        items = []
        for token, h in zip(tokens, rows):
            # house-keeping: hash expired, index entry left behind
            if not h:
                await self.remove_pending(token)
                total -= 1
                continue
            try:
                created = float(h.get("created_at", "0"))
            except ValueError:
                created = 0.0
            items.append({
                "token": token,
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "order_id": h.get("order_id", ""),
                "order_number": h.get("order_number", ""),
                "email": h.get("customer_email", ""),
                "amount": int(h.get("amount", "0") or 0),
                "provider": h.get("provider", ""),
                "redirect_url": h.get("redirect_url", ""),
                "status": "pending",
            })
        return total, items
