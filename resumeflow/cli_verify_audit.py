from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, Iterable, List

import orjson

from .hashing import chain_next


def verify_events(events: Iterable[Dict[str, Any]]) -> dict:
    """Walk a job's events in order and report the first broken link, if any."""
    verified: List[Dict[str, Any]] = []
    prev = ""
    break_index = None
    for idx, ev in enumerate(events):
        linked = ev.get("prev_event_hash", "") == prev
        payload = {k: v for k, v in ev.items() if k != "event_hash"}
        if not linked or chain_next(prev, payload) != ev.get("event_hash"):
            break_index = idx
            break
        prev = ev["event_hash"]
        verified.append(ev)
    return {
        "job_id": verified[0]["job_id"] if verified else None,
        "events": len(verified),
        "steps": [ev["step"] for ev in verified],
        "valid": break_index is None,
        "break_index": break_index,
    }


def verify_chain(audit_path: Path) -> dict:
    lines = audit_path.read_text(encoding="utf-8").splitlines()
    return verify_events(orjson.loads(line) for line in lines if line.strip())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify a job's hash-chained audit trail")
    parser.add_argument("--job", required=True, help="Job id, or a directory holding audit.jsonl")
    parser.add_argument("--db", action="store_true", help="Verify the audit table instead of audit.jsonl")
    args = parser.parse_args(argv)

    if args.db:
        from . import storage

        events = storage.get_audit_events(args.job)
        if not events:
            print(orjson.dumps({"valid": False, "error": "no audit rows", "job_id": args.job}).decode())
            return 2
        result = verify_events(events)
    else:
        target = Path(args.job)
        if target.is_dir():
            audit = target / "audit.jsonl"
        else:
            from .settings import settings

            audit = settings.artifacts_dir_for(args.job) / "audit.jsonl"
        if not audit.exists():
            print(orjson.dumps({"valid": False, "error": "audit.jsonl not found", "path": str(audit)}).decode())
            return 2
        result = verify_chain(audit)
    print(orjson.dumps(result, option=orjson.OPT_SORT_KEYS).decode())
    return 0 if result["valid"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
