#!/usr/bin/env python3
"""
qr2buy verify client (async)

What the success page does after the provider redirects the buyer back:
  1) GET /api/checkout/verify?session_id=...
  2) on 409 (payment not completed yet), 5xx or a transport error,
     retry after 1, 2, 4, 8, 16 seconds
  3) stop on 200 (sale confirmed) or any other 4xx (will never succeed)

Usage:
  python -m qr2buy.verify_client --base http://localhost:8000 \
                                 --session cs_mock_...

  # drive a MockPay session to success first, then verify
  python -m qr2buy.verify_client --base http://localhost:8000 \
                                 --session cs_mock_... --emit succeeded
"""

import asyncio
import argparse
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

BACKOFF_SCHEDULE = (0.0, 1.0, 2.0, 4.0, 8.0, 16.0)


@dataclass
class VerifyResult:
    ok: bool
    outcome: str  # CONFIRMED/PENDING/FATAL/ERROR
    attempts: int = 0
    status_code: Optional[int] = None
    body: Optional[Dict[str, Any]] = None
    err: Optional[str] = None
    t_total: float = 0.0
    history: List[str] = field(default_factory=list)


def _retryable(status_code: int) -> bool:
    # 409: provider has not marked the session paid yet
    return status_code == 409 or status_code >= 500


def _json(resp: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def verify_with_backoff(
    client: httpx.AsyncClient,
    base: str,
    session_id: str,
    schedule: Sequence[float] = BACKOFF_SCHEDULE,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    timeout: float = 10.0,
) -> VerifyResult:
    r = VerifyResult(ok=False, outcome="ERROR")
    url = f"{base.rstrip('/')}/api/checkout/verify"
    t0 = time.perf_counter()

    for delay in schedule:
        if delay:
            await sleep(delay)
        r.attempts += 1
        try:
            resp = await client.get(url, params={"session_id": session_id},
                                    timeout=timeout)
        except httpx.HTTPError as e:
            r.err = f"transport: {e!r}"
            r.history.append("transport-error")
            continue

        r.status_code = resp.status_code
        r.body = _json(resp)
        r.history.append(str(resp.status_code))

        if resp.status_code == 200:
            r.ok = True
            r.outcome = "CONFIRMED"
            r.err = None
            break
        if not _retryable(resp.status_code):
            r.outcome = "FATAL"
            r.err = (r.body or {}).get("error") or f"HTTP {resp.status_code}"
            break
        r.outcome = "PENDING" if resp.status_code == 409 else "ERROR"
        r.err = (r.body or {}).get("error") or f"HTTP {resp.status_code}"

    r.t_total = time.perf_counter() - t0
    return r


async def emit_mock_outcome(client: httpx.AsyncClient, base: str,
                            session_id: str, kind: str) -> int:
    resp = await client.post(
        f"{base.rstrip('/')}/mockpay/{session_id}/emit",
        json={"t": kind},
        follow_redirects=False,
        timeout=30.0,
    )
    return resp.status_code


async def run(base: str, session_id: str, emit: Optional[str]
              ) -> VerifyResult:
    async with httpx.AsyncClient(
        headers={"User-Agent": "qr2buy-verify/1.0"}
    ) as client:
        if emit:
            code = await emit_mock_outcome(client, base, session_id, emit)
            print(f"emit {emit}: HTTP {code}")
        return await verify_with_backoff(client, base, session_id)


def main():
    ap = argparse.ArgumentParser(description="qr2buy verify client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--session", required=True,
                    help="Checkout session id to verify")
    ap.add_argument("--emit", choices=("succeeded", "failed", "canceled"),
                    help="Settle a MockPay session before verifying")
    args = ap.parse_args()

    res = asyncio.run(run(args.base, args.session, args.emit))
    print("\n=== Verify ===")
    print(
        f"Outcome: {res.outcome}   Attempts: {res.attempts}   "
        f"Last HTTP: {res.status_code}   Time: {res.t_total:.3f}s"
    )
    if res.err:
        print(f"Error: {res.err}")
    if res.body is not None:
        print(json.dumps(res.body, indent=2))
    raise SystemExit(0 if res.ok else 1)


if __name__ == "__main__":
    main()
