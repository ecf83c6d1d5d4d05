# model/paymentsession/_sql.py
"""
SQL payment-session store, same contract as the Redis one. Tables are the
PaymentSessionHot / PaymentSessionPending / IdempotencyKey models in orm.py.
The upserts use ON CONFLICT, which Postgres and SQLite (>= 3.35) both take.
"""
from __future__ import annotations
import time
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated


class PaymentSessionStore:
    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int, gated: Gated
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_payment_session(
            self, token: str, mapping: Dict[str, Any]
    ) -> None:
        created_at = float(mapping.get("created_at") or time.time())
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payment_sessions_hot(
                    token, order_id, order_number, amount, customer_email,
                    redirect_url, provider, created_at, expires_at
                  ) VALUES (
                    :token, :order_id, :order_number, :amount,
                    :customer_email, :redirect_url, :provider, :created_at,
                    :expires_at
                  )
                  ON CONFLICT (token) DO UPDATE SET
                    order_id=excluded.order_id,
                    order_number=excluded.order_number,
                    amount=excluded.amount,
                    customer_email=excluded.customer_email,
                    redirect_url=excluded.redirect_url,
                    provider=excluded.provider,
                    created_at=excluded.created_at,
                    expires_at=excluded.expires_at
                """), {
                    "token": token,
                    "order_id": mapping["order_id"],
                    "order_number": mapping["order_number"],
                    "amount": int(mapping["amount"]),
                    "customer_email": mapping.get("customer_email") or "",
                    "redirect_url": mapping.get("redirect_url"),
                    "provider": mapping.get("provider") or "",
                    "created_at": created_at,
                    "expires_at": created_at + self.ttl + 60,
                })
                await self.db.execute(text("""
                  INSERT INTO payment_sessions_pending(token, created_at)
                  VALUES(:token, :created_at)
                  ON CONFLICT (token) DO UPDATE
                  SET created_at=excluded.created_at
                """), {"token": token, "created_at": created_at})

    async def get_payment_session(self, token: str
                                  ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM payment_sessions_hot
                  WHERE token=:token AND expires_at > :now
                """), {"token": token, "now": time.time()})).mappings().first()
                return dict(row) if row else None

    async def remove_pending(self, token: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM payment_sessions_pending "
                         "WHERE token=:token"),
                    {"token": token}
                )
                await self.db.execute(
                    text("DELETE FROM payment_sessions_hot "
                         "WHERE token=:token"),
                    {"token": token}
                )

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True the first time evt_id is seen (and for a missing id)."""
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO idempotency_keys(key, created_at)
                  VALUES(:k, :now)
                  ON CONFLICT (key) DO NOTHING
                  RETURNING key
                """), {"k": evt_id, "now": time.time()})).first()
        return row is not None

    async def forget_event(self, evt_id: Optional[str]) -> None:
        if not evt_id:
            return
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM idempotency_keys WHERE key=:k"),
                    {"k": evt_id}
                )

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        now = time.time()
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT
                        p.token,
                        h.created_at,
                        h.expires_at,
                        h.order_id,
                        h.order_number,
                        h.amount,
                        h.customer_email,
                        h.provider,
                        h.redirect_url
                    FROM payment_sessions_pending AS p
                    LEFT JOIN payment_sessions_hot AS h ON h.token = p.token
                    ORDER BY p.created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

                items: List[Dict[str, Any]] = []
                missing: List[str] = []
                for r in rows:
                    # pending entry without a live hot row -> drop it
                    if r["created_at"] is None or r["expires_at"] <= now:
                        missing.append(r["token"])
                        continue
                    created = float(r["created_at"])
                    items.append({
                        "token": r["token"],
                        "created_at": created,
                        "age_ms": int(max(0.0, now - created) * 1000),
                        "order_id": r["order_id"] or "",
                        "order_number": r["order_number"] or "",
                        "email": r["customer_email"] or "",
                        "amount": int(r["amount"] or 0),
                        "provider": r["provider"] or "",
                        "redirect_url": r["redirect_url"] or "",
                        "status": "pending",
                    })

                if missing:
                    for table in ("payment_sessions_pending",
                                  "payment_sessions_hot"):
                        stmt = text(
                            f"DELETE FROM {table} WHERE token IN :tokens"
                        ).bindparams(bindparam("tokens", expanding=True))
                        await self.db.execute(stmt,
                                              {"tokens": tuple(missing)})

                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM payment_sessions_pending")
                )).scalar_one()

        return int(total), items
