from __future__ import annotations

import logging
from typing import Any, Dict

from pydantic import ValidationError

from . import storage
from .errors import classify_user_error
from .normalize import normalize_resume
from .notifications import notify_best_effort
from .schemas import ProviderCallback, ResumeContent, validation_messages

logger = logging.getLogger(__name__)

FINAL_PROVIDER_STATUSES = ("succeeded", "failed", "canceled")


def handle_provider_callback(callback: ProviderCallback, runner: Any) -> Dict[str, Any]:
    """Apply an external provider's completion event to its job.

    Redelivered events for a job that is already terminal are skipped.
    """
    if callback.status not in FINAL_PROVIDER_STATUSES:
        return {"result": "ignored", "reason": f"non-final status {callback.status}"}

    job = storage.find_by_external_job(callback.external_job_id)
    if job is None:
        logger.warning("callback for unknown external job external_job_id=%s", callback.external_job_id)
        return {"result": "ignored", "reason": "unknown external job"}
    job_id = job["id"]
    if job["status"] in storage.TERMINAL_STATUSES:
        logger.info("callback for terminal job skipped job_id=%s status=%s", job_id, job["status"])
        return {"result": "skipped", "job_id": job_id, "status": job["status"]}

    if callback.status == "succeeded":
        if not isinstance(callback.output, dict):
            return _fail(runner, job_id, "Invalid resume data structure: output missing")
        try:
            content = ResumeContent.model_validate(normalize_resume(callback.output)).model_dump(exclude_none=True)
        except ValidationError as e:
            return _fail(runner, job_id, f"Schema validation failed: {'; '.join(validation_messages(e))}")
        runner.commit(job, content, step="webhook.completed", details={"external_job_id": callback.external_job_id})
        return {"result": "completed", "job_id": job_id}

    raw = callback.error or f"Provider job {callback.status}"
    return _fail(runner, job_id, raw)


def _fail(runner: Any, job_id: str, raw: str) -> Dict[str, Any]:
    _, user_message = classify_user_error(raw)
    if storage.mark_failed(job_id, raw, user_message):
        notify_best_effort(runner.notifier, job_id, storage.FAILED, user_message)
    return {"result": "failed", "job_id": job_id, "error": user_message}
