from __future__ import annotations

import argparse
import logging

import orjson

from .maintenance import (
    ORPHAN_AGE_S,
    ORPHAN_BATCH,
    recover_orphaned_jobs,
    release_stranded_waiting,
    resolve_waiting_jobs,
)
from .service import build_pipeline
from .settings import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Periodic maintenance sweeps for stuck jobs")
    parser.add_argument("task", choices=["recover", "resolve", "release", "all"])
    parser.add_argument("--older-than", type=float, default=ORPHAN_AGE_S, help="Minimum age in seconds")
    parser.add_argument("--limit", type=int, default=ORPHAN_BATCH, help="Jobs per sweep")
    parser.add_argument("--no-drain", action="store_true", help="Publish only; do not process")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    pipeline = build_pipeline(settings)
    summary = {}
    if args.task in ("recover", "all"):
        summary["recover"] = recover_orphaned_jobs(pipeline.queue, args.older_than, args.limit)
    if args.task in ("resolve", "all"):
        summary["resolve"] = resolve_waiting_jobs(pipeline.runner)
    if args.task in ("release", "all"):
        summary["release"] = release_stranded_waiting(pipeline.queue, args.older_than, args.limit)
    if not args.no_drain:
        summary["deliveries"] = pipeline.drain()
    print(orjson.dumps(summary, option=orjson.OPT_SORT_KEYS).decode())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
