from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

# Dead-letter root (container sets /app/buffer via env)
BUFFER_DIR = os.getenv("BUFFER_DIR", "./buffer")


def dlq_path(op: str) -> str:
    return os.path.join(BUFFER_DIR, "dlq", f"{op}.jsonl")


def write_dlq(op: str, payload: dict[str, Any], reason: str) -> None:
    """Append a dead-letter entry for work that will not be retried.

    Structure: {op, payload, reason, ts}
    """
    path = dlq_path(op)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    line = {
        "op": op,
        "payload": payload,
        "reason": reason,
        "ts": datetime.now(timezone.utc).isoformat(),
    }
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(line, ensure_ascii=False) + "\n")


def read_dlq(op: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    try:
        with open(dlq_path(op), "r", encoding="utf-8") as f:
            for ln in f:
                ln = ln.strip()
                if not ln:
                    continue
                try:
                    rows.append(json.loads(ln))
                except json.JSONDecodeError:
                    continue
    except FileNotFoundError:
        return []
    return rows
