#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio

from unwrapper.decoder import WrapperDecoder
from unwrapper.dlq import dlq_path, read_dlq
from unwrapper.outcomes import Resolved


async def replay_resolve(rows: list[dict]) -> tuple[int, int]:
    """Decode dead-lettered wrapped links again; returns (resolved, still_failing)."""
    decoder = WrapperDecoder()
    ok = failed = 0
    for row in rows:
        payload = row.get("payload") or {}
        link = payload.get("wrapped_link")
        if not link:
            continue
        outcome = await decoder.decode(str(link))
        if isinstance(outcome, Resolved):
            ok += 1
            print(f"{payload.get('article_id')}\t{outcome.url}")
        else:
            failed += 1
            print(f"{payload.get('article_id')}\t{outcome.status}: {outcome.error}")
    return ok, failed


async def main() -> None:
    ap = argparse.ArgumentParser(description="Replay DLQ operations")
    ap.add_argument("op", choices=["resolve"], help="DLQ operation to replay")
    ns = ap.parse_args()
    rows = read_dlq(ns.op)
    if not rows:
        print(f"No DLQ entries at {dlq_path(ns.op)}", flush=True)
        return
    if ns.op == "resolve":
        ok, failed = await replay_resolve(rows)
        print(f"Replayed {ok + failed} entries from {ns.op}: {ok} resolved, {failed} still failing")


if __name__ == "__main__":
    asyncio.run(main())
