from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from . import storage
from .errors import RetryRejected, is_permanent_error_type
from .notifications import notify_best_effort
from .schemas import JobMessage
from .settings import settings

logger = logging.getLogger(__name__)


def retry_failed_job(
    owner_id: str,
    job_id: str,
    queue: Any,
    notifier: Any = None,
    audit: Any = None,
    retries_cfg: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """User-initiated retry of a failed job. Raises RetryRejected when not allowed."""
    cfg = retries_cfg or settings.retries
    total_max = int(cfg.get("total_max_attempts", 6))
    manual_max = int(cfg.get("manual_max_retries", 2))

    job = storage.get_job(job_id)
    if job is None:
        raise RetryRejected("not_found", "Resume not found", 404)
    if job["owner_id"] != owner_id:
        raise RetryRejected("forbidden", "You do not have permission to retry this resume", 403)
    if job["attempt_count"] >= total_max:
        raise RetryRejected(
            "max_attempts_exceeded", "Maximum retry attempts exceeded. This resume cannot be retried.", 429
        )
    if is_permanent_error_type(job["last_error_type"]):
        raise RetryRejected(
            "permanent_error",
            f"This resume failed with a permanent error ({job['last_error_type']}). Retrying will not help.",
            400,
        )
    if job["status"] != storage.FAILED:
        raise RetryRejected("not_failed", "Can only retry failed resumes", 400)
    if job["retry_count"] >= manual_max:
        raise RetryRejected("max_retries_exceeded", "Maximum retry limit reached. Please upload a new resume.", 429)

    if not storage.retry_job(job_id):
        raise RetryRejected("not_failed", "Can only retry failed resumes", 409)
    try:
        queue.publish(
            JobMessage(
                job_id=job_id,
                owner_id=owner_id,
                storage_ref=job["storage_ref"],
                content_hash=job["content_hash"],
                attempt=1,
            )
        )
    except Exception as e:
        logger.error("retry publish failed job_id=%s err=%s:%s", job_id, type(e).__name__, e)
        storage.mark_failed(job_id, job["last_error"] or "retry publish failed", job["user_error"] or "", job["last_error_type"])
        raise RetryRejected("queue_unavailable", "Queue service unavailable", 500) from e

    if audit is not None:
        audit.log_event(job_id, "retry.queued", "ok", {"retry_count": job["retry_count"] + 1})
    notify_best_effort(notifier, job_id, storage.QUEUED)
    return {"job_id": job_id, "status": storage.QUEUED, "retry_count": job["retry_count"] + 1}
