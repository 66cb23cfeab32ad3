#!/usr/bin/env python3
"""
tixflow load client (async)

Simulates checkout plus processor traffic against a running server:
  1) POST /payments/initiate  -> {reference, amountMinorUnits, metadata}
  2) build the charge.success (or charge.failed) body the processor would
     send, sign it with the webhook secret
  3) POST /payments/webhook, `--duplicates` times concurrently, the way a
     retrying processor would
  4) Poll GET /api/payments/{reference} until status != pending

Afterwards it reads the ticket type's inventory and checks that no more
tickets were sold than exist, and that every completed payment got exactly
its tickets.

Usage:
  PAYSTACK_SECRET_KEY=sk_test_x python -m tixflow.load_client \\
      --event EVT --ticket-type TT --total 200 --concurrency 50 \\
      --duplicates 3

Notes:
- Set --total higher than the ticket type's capacity to exercise sold-out
  handling; the overflow shows up as `sold_out` anomalies.
"""

import argparse
import asyncio
import json
import os
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from .config import SIGNATURE_HEADER
from .paystack import Paystack


def _rand_id(k: int = 12) -> str:
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=k))


@dataclass
class Result:
    ok: bool
    outcome: str  # completed/failed/rejected/TIMEOUT/ERROR
    reference: str = ""
    quantity: int = 0
    tickets: int = 0
    t_initiate: float = 0.0
    t_webhook: float = 0.0
    t_observed: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)
    inventory: Dict[str, int] = field(default_factory=dict)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_observed for r in self.results if r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]

        def count(outcome):
            return sum(1 for r in self.results if r.outcome == outcome)
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "completed": count("completed"),
            "failed": count("failed"),
            "rejected": count("rejected"),
            "timeout": count("TIMEOUT"),
            "error": count("ERROR"),
            "tickets": sum(r.tickets for r in self.results),
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
            f"COMPLETED: {int(s['completed'])}   FAILED: {int(s['failed'])}"
            f"   REJECTED: {int(s['rejected'])}   "
            f"TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(f"Tickets issued: {int(s['tickets'])}")
        print(
            f"Latency (webhook to resolved payment): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


def charge_body(init: dict, kind: str) -> bytes:
    """The processor's envelope, from what initiation handed the browser."""
    return json.dumps({
        "event": f"charge.{kind}",
        "data": {
            "reference": init["reference"],
            "amount": init["amountMinorUnits"],
            "currency": init["currency"],
            "status": "success" if kind == "success" else "failed",
            "gateway_response": (
                "Approved" if kind == "success" else "Declined"
            ),
            "metadata": init["metadata"],
            "customer": {"email": init["email"]},
        },
    }).encode()


async def one_payment(
    client: httpx.AsyncClient,
    base: str,
    processor: Paystack,
    event_id: str,
    ticket_type_id: str,
    quantity: int,
    kind: str,
    duplicates: int,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR", quantity=quantity)
    user = f"load_{_rand_id()}"
    email = f"{user}@example.com"

    # 1) initiate
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/payments/initiate",
            json={
                "eventId": event_id,
                "email": email,
                "attendee": {"fullName": user, "email": email},
                "lineItems": [
                    {"ticketTypeId": ticket_type_id, "quantity": quantity}
                ],
            },
            headers={"x-user-id": user},
            timeout=30.0,
        )
        if resp.status_code in (400, 404):
            # sold out before checkout; not an error under load
            r.ok = True
            r.outcome = "rejected"
            return r
        resp.raise_for_status()
        init = resp.json()
    except Exception as e:
        r.err = f"initiate: {e}"
        return r
    r.reference = init["reference"]
    r.t_initiate = time.perf_counter() - t0

    # 2) + 3) signed webhook, delivered more than once
    body = charge_body(init, kind)
    headers = {
        SIGNATURE_HEADER: processor.sign(body),
        "content-type": "application/json",
    }
    t1 = time.perf_counter()
    try:
        deliveries = await asyncio.gather(*(
            client.post(f"{base}/payments/webhook", content=body,
                        headers=headers, timeout=30.0)
            for _ in range(duplicates)
        ))
        if all(d.status_code >= 400 for d in deliveries):
            r.err = f"webhook HTTP {deliveries[0].status_code}"
            return r
    except Exception as e:
        r.err = f"webhook: {e}"
        return r
    r.t_webhook = time.perf_counter() - t1

    # 4) poll payment status
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "pending"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(
                f"{base}/api/payments/{r.reference}", timeout=10.0
            )
            if g.status_code == 200:
                jo = g.json()
                status = jo.get("status", status)
                if status != "pending":
                    r.tickets = len(jo.get("tickets", []))
                    break
            await asyncio.sleep(poll_interval_s)
    except Exception as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status if status != "pending" else "TIMEOUT"
    return r


async def run_load(
    base: str,
    secret: str,
    event_id: str,
    ticket_type_id: str,
    total: int,
    concurrency: int,
    max_quantity: int,
    fail_rate: float,
    duplicates: int,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()
    processor = Paystack(secret)

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "tixflowLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                kind = "failed" if random.random() < fail_rate else "success"
                res = await one_payment(
                    client, base, processor, event_id, ticket_type_id,
                    random.randint(1, max_quantity), kind,
                    max(1, duplicates), poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        inv = (await client.get(
            f"{base}/api/ticket-types/{ticket_type_id}/inventory"
        )).json()

    stats.inventory = inv
    return stats


def check_invariants(stats: Stats) -> bool:
    inv = stats.inventory
    ok = True
    if inv.get("sold", 0) > inv.get("total", 0):
        print(f"OVERSOLD: sold {inv['sold']} of {inv['total']}")
        ok = False
    for r in stats.results:
        if r.outcome == "completed" and r.tickets not in (0, r.quantity):
            print(f"{r.reference}: {r.tickets} tickets for qty {r.quantity}")
            ok = False
    print(
        f"Inventory: sold {inv.get('sold')} / {inv.get('total')}   "
        f"invariants: {'OK' if ok else 'VIOLATED'}"
    )
    return ok


def main():
    ap = argparse.ArgumentParser(description="tixflow load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--secret", default=os.environ.get(
                    "PAYSTACK_SECRET_KEY", ""),
                    help="Webhook signing secret (default: env)")
    ap.add_argument("--event", required=True, help="Event id")
    ap.add_argument("--ticket-type", required=True, help="Ticket type id")
    ap.add_argument("--total", type=int, default=100,
                    help="Total payments to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--max-quantity", type=int, default=2,
                    help="Tickets per payment, drawn from 1..N")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as failed")
    ap.add_argument("--duplicates", type=int, default=2,
                    help="Deliveries per webhook")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for non-pending")
    args = ap.parse_args()

    if not args.secret:
        ap.error("need --secret or PAYSTACK_SECRET_KEY")

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        secret=args.secret,
        event_id=args.event,
        ticket_type_id=args.ticket_type,
        total=args.total,
        concurrency=args.concurrency,
        max_quantity=max(1, args.max_quantity),
        fail_rate=args.fail_rate,
        duplicates=args.duplicates,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)
    raise SystemExit(0 if check_invariants(stats) else 1)


if __name__ == "__main__":
    main()
