from __future__ import annotations

import argparse
import logging

import orjson

from . import storage
from .errors import RetryRejected
from .retry import retry_failed_job
from .service import build_pipeline
from .settings import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Retry a failed resume job on behalf of its owner")
    parser.add_argument("--owner", required=True)
    parser.add_argument("--job", required=True)
    parser.add_argument("--no-drain", action="store_true", help="Only requeue; do not process")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING)
    pipeline = build_pipeline(settings)
    try:
        result = retry_failed_job(
            args.owner, args.job, pipeline.queue, notifier=pipeline.notifier, audit=pipeline.audit
        )
    except RetryRejected as e:
        print(orjson.dumps({"result": "rejected", **e.to_dict()}, option=orjson.OPT_SORT_KEYS).decode())
        return 1
    if not args.no_drain:
        pipeline.drain()
        job = storage.get_job(args.job) or {}
        result["status"] = job.get("status")
        result["user_error"] = job.get("user_error")
    print(orjson.dumps(result, option=orjson.OPT_SORT_KEYS).decode())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
