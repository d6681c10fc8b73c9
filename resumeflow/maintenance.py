from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Dict, List

from . import storage
from .schemas import JobMessage
from .settings import settings

logger = logging.getLogger(__name__)

ORPHAN_AGE_S = 5 * 60
ORPHAN_BATCH = 10


def recover_orphaned_jobs(queue: Any, older_than_s: float = ORPHAN_AGE_S, limit: int = ORPHAN_BATCH) -> Dict[str, Any]:
    """Re-publish jobs stuck in pending_claim (claim crashed between hashing and enqueue)."""
    max_attempts = int(settings.retries.get("total_max_attempts", 6))
    orphans = storage.find_orphaned(older_than_s, max_attempts, limit=limit)
    published: List[str] = []
    for job in orphans:
        try:
            queue.publish(
                JobMessage(
                    job_id=job["id"],
                    owner_id=job["owner_id"],
                    storage_ref=job["storage_ref"],
                    content_hash=job["content_hash"],
                    attempt=1,
                )
            )
        except Exception as e:
            logger.error("orphan re-publish failed job_id=%s err=%s:%s", job["id"], type(e).__name__, e)
            continue
        published.append(job["id"])
        logger.info("recovered orphaned job job_id=%s", job["id"])
    recovered = storage.mark_recovered(published)
    return {
        "ok": True,
        "found": len(orphans),
        "recovered": recovered,
        "timestamp": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
    }


def resolve_waiting_jobs(runner: Any) -> Dict[str, Any]:
    """Run fan-out for every hash that has waiting jobs and a finished extraction."""
    resolved = 0
    hashes = storage.waiting_hashes_with_cache()
    for content_hash, completed_job_id in hashes:
        source = storage.get_job(completed_job_id)
        if source is None or source["extracted_content"] is None:
            continue
        resolved += runner.fan_out(content_hash, source["extracted_content"], completed_job_id)
    return {
        "ok": True,
        "hashes": len(hashes),
        "resolved": resolved,
        "timestamp": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
    }


def release_stranded_waiting(queue: Any, older_than_s: float = ORPHAN_AGE_S, limit: int = ORPHAN_BATCH) -> Dict[str, Any]:
    """Requeue waiting jobs whose in-flight job failed, so they extract on their own."""
    stranded = storage.find_stranded_waiting(older_than_s, limit=limit)
    ids = [job["id"] for job in stranded]
    released = storage.requeue_waiting(ids)
    published = 0
    for job in stranded:
        try:
            queue.publish(
                JobMessage(
                    job_id=job["id"],
                    owner_id=job["owner_id"],
                    storage_ref=job["storage_ref"],
                    content_hash=job["content_hash"],
                    attempt=1,
                )
            )
            published += 1
        except Exception as e:
            # Job stays queued without a message
            logger.error("stranded job re-publish failed job_id=%s err=%s:%s", job["id"], type(e).__name__, e)
    return {
        "ok": True,
        "found": len(stranded),
        "released": released,
        "published": published,
        "timestamp": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
    }
