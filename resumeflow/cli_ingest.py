from __future__ import annotations

import argparse
import logging
import uuid
from pathlib import Path

import orjson

from . import storage
from .errors import ClaimError
from .schemas import ClaimRequest
from .service import build_pipeline
from .settings import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Stage a resume PDF, claim it for an owner and process the queue")
    parser.add_argument("--file", required=True, help="Path to a PDF resume")
    parser.add_argument("--owner", required=True, help="Owner id to claim the upload for")
    parser.add_argument("--referral", help="Referral token to link to the owner")
    parser.add_argument("--no-drain", action="store_true", help="Only claim; leave the message queued")
    parser.add_argument("--verbose", action="store_true", help="Log at INFO level")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    path = Path(args.file)
    if not path.is_file():
        print(orjson.dumps({"status": "error", "error": f"file not found: {path}"}).decode())
        return 2

    pipeline = build_pipeline(settings)
    staging_ref = f"{settings.storage.get('staging_prefix', 'temp/')}{uuid.uuid4().hex}/{path.name}"
    pipeline.object_store.put(staging_ref, path.read_bytes())

    try:
        claimed = pipeline.claims.claim(args.owner, ClaimRequest(staging_ref=staging_ref, referral_token=args.referral))
    except ClaimError as e:
        print(orjson.dumps({"result": "error", **e.to_dict()}, option=orjson.OPT_SORT_KEYS).decode())
        return 1

    deliveries = 0 if args.no_drain else pipeline.drain()
    job = storage.get_job(claimed.job_id) or {}
    summary = {
        "job_id": claimed.job_id,
        "claim_status": claimed.status,
        "cached": claimed.cached,
        "deliveries": deliveries,
        "status": job.get("status"),
        "content_hash": job.get("content_hash"),
        "user_error": job.get("user_error"),
        "dead_letters": len(pipeline.queue.dead_letters),
        "artifact": storage.get_artifact(args.owner) is not None,
    }
    print(orjson.dumps(summary, option=orjson.OPT_SORT_KEYS).decode())
    return 0 if job.get("status") != storage.FAILED else 1


if __name__ == "__main__":
    raise SystemExit(main())
