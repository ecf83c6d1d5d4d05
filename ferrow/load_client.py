#!/usr/bin/env python3
"""
Ferrow load client (async)

Drives the checkout flow against a server running PAYMENT_PROVIDER=mock:
  1) GET  /api/products?active_only=true   (once, to pick from)
  2) POST /api/orders                      -> {order_id, order_number}
  3) POST /api/payment/create-transaction  -> {token, redirect_url}
  4) POST /mockpay/{token}/emit  (t=settlement|deny|expire)
  5) Poll GET /api/orders/{order_id} until payment_status != pending

Usage:
  python -m ferrow.load_client --base http://localhost:8000 \
                               --total 200 --concurrency 50

Notes:
- Every paid order takes stock; seed enough of it first (seed.py).
- Keep server workers=1 with SQLite to avoid lock contention artifacts.
"""

import asyncio
import random
import string
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

FINAL = ("paid", "failed", "expired")


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


def _customer() -> Dict[str, str]:
    email = _rand_email()
    return {
        "user_id": email.split("@")[0],
        "customer_name": "Load Tester",
        "customer_email": email,
        "customer_phone": "081234567890",
        "shipping_address": "Jl. Percobaan 1",
        "shipping_city": "Bandung",
        "shipping_province": "Jawa Barat",
        "shipping_postal_code": "40111",
    }


@dataclass
class Result:
    ok: bool
    outcome: str  # paid/failed/expired/TIMEOUT/ERROR
    t_order: float = 0.0
    t_payment: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until a final payment status is seen
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        lat = [
            r.t_observed for r in self.results
            if r.outcome in FINAL and r.t_observed > 0
        ]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "paid": self.count("paid"),
            "failed": self.count("failed"),
            "expired": self.count("expired"),
            "timeout": self.count("TIMEOUT"),
            "error": self.count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"PAID: {int(s['paid'])}   FAILED: {int(s['failed'])}   "
            f"EXPIRED: {int(s['expired'])}   TIMEOUT: {int(s['timeout'])}"
            f"   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (observed payment resolution): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )
        errors = [r.err for r in self.results if r.err]
        for err in errors[:5]:
            print(f"  error: {err}")


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    product_ids: List[int],
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR")

    # 1) order
    t0 = time.perf_counter()
    try:
        items = [{"product_id": pid, "quantity": 1}
                 for pid in random.sample(product_ids,
                                          k=min(2, len(product_ids)))]
        resp = await client.post(
            f"{base}/api/orders",
            json={**_customer(), "items": items},
            timeout=30.0,
        )
        resp.raise_for_status()
        order_id = resp.json()["order_id"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"order: {e}"
        return r
    r.t_order = time.perf_counter() - t0

    # 2) payment session; redirect_url is like "/mockpay/{token}"
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/payment/create-transaction",
            json={"order_id": order_id},
            timeout=30.0,
        )
        resp.raise_for_status()
        token = resp.json()["token"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"create-transaction: {e}"
        return r
    r.t_payment = time.perf_counter() - t1

    # 3) emit outcome (simulate clicking the button on the MockPay page)
    t2 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{token}/emit",
            data={"t": emit_kind},
            follow_redirects=False,
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t2

    # 4) poll until the payment is final or timeout
    t3 = time.perf_counter()
    deadline = t3 + poll_timeout_s
    status = "pending"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/orders/{order_id}",
                                 timeout=10.0)
            if g.status_code == 200:
                status = g.json()["order"]["payment_status"]
                if status in FINAL:
                    break
            await asyncio.sleep(poll_interval_s)
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t3
    r.ok = True
    r.outcome = status if status in FINAL else "TIMEOUT"
    return r


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    fail_rate: float,
    expire_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "FerrowLoad/1.0"}
    ) as client:
        resp = await client.get(f"{base}/api/products",
                                params={"active_only": "true"})
        resp.raise_for_status()
        product_ids = [p["id"] for p in resp.json() if p["stock"] > 0]
        if not product_ids:
            raise SystemExit("no products in stock; run seed.py first")

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "deny"
                elif rnd < fail_rate + expire_rate:
                    emit_kind = "expire"
                else:
                    emit_kind = "settlement"

                res = await one_order(
                    client, base, product_ids, emit_kind,
                    poll_interval_s, poll_timeout_s
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="Ferrow load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to deny")
    ap.add_argument("--expire-rate", type=float, default=0.0,
                    help="Fraction of payments to expire")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for a final payment status")
    args = ap.parse_args()

    if args.fail_rate + args.expire_rate > 0.95:
        print(
            "Warning: combined fail+expire rate is very high; "
            "few paid outcomes will occur."
        )

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        total=args.total,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        expire_rate=args.expire_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
