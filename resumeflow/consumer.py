from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from . import storage
from .errors import ExtractionFailed, JobNotFound, classify_queue_error, classify_user_error
from .hashing import sha256_bytes
from .notifications import invalidate_best_effort, notify_best_effort
from .schemas import JobMessage, ResumeContent, validation_messages

logger = logging.getLogger(__name__)


class JobRunner:
    """Drives one job message from queued to completed or failed.

    Safe under redelivery: completed jobs are acknowledged untouched and a
    staged result from a crashed delivery is committed without extracting
    again.
    """

    def __init__(self, object_store: Any, adapter: Any, notifier: Any = None, audit: Any = None) -> None:
        self.store = object_store
        self.adapter = adapter
        self.notifier = notifier
        self.audit = audit

    def _audit(self, job_id: str, step: str, status: str, details: Dict[str, Any], **kw) -> None:
        if self.audit is None:
            return
        try:
            self.audit.log_event(job_id, step, status, details, **kw)
        except Exception:
            logger.exception("audit write failed job_id=%s step=%s", job_id, step)

    # --- queue-facing --------------------------------------------------------

    def process(self, delivery) -> str:
        """Handle one delivery and settle it. Returns the outcome label."""
        message: JobMessage = delivery.message
        try:
            outcome = self.handle(message)
        except Exception as e:
            qerr = classify_queue_error(e)
            raw = qerr.message
            error_type = qerr.error_type.value
            if qerr.is_retryable():
                logger.warning(
                    "transient failure, retrying job_id=%s attempt=%d type=%s err=%s",
                    message.job_id, delivery.attempts, error_type, raw,
                )
                storage.record_error(message.job_id, raw, error_type)
                storage.requeue(message.job_id)
                self._audit(message.job_id, "consume.retry", "error", {"error_type": error_type, "error": raw[:200]})
                notify_best_effort(self.notifier, message.job_id, storage.QUEUED)
                delivery.retry(raw)
                return "retry"
            logger.error("permanent failure job_id=%s type=%s err=%s", message.job_id, error_type, raw)
            _, user_message = classify_user_error(raw)
            if storage.mark_failed(message.job_id, raw, user_message, error_type):
                self._audit(message.job_id, "consume.failed", "error", {"error_type": error_type, "error": raw[:200]})
                notify_best_effort(self.notifier, message.job_id, storage.FAILED, user_message)
            delivery.ack()
            return "failed"
        delivery.ack()
        return outcome

    # --- state machine -------------------------------------------------------

    def handle(self, message: JobMessage) -> str:
        job = storage.get_job(message.job_id)
        if job is None:
            raise JobNotFound(f"job not found: {message.job_id}")
        job_id = job["id"]
        owner_id = job["owner_id"]
        content_hash = job["content_hash"] or message.content_hash

        # 1. redelivery after a successful commit
        if job["status"] == storage.COMPLETED and job["extracted_content"] is not None:
            logger.info("job already completed, skipping job_id=%s", job_id)
            return "already_completed"

        # Stale message for a failed job; only a user retry revives it
        if job["status"] == storage.FAILED:
            logger.info("job already failed, skipping job_id=%s", job_id)
            return "skipped"

        attempts = storage.increment_attempts(job_id)

        # 2. a previous delivery extracted but crashed before commit
        if job["staged_content"] is not None:
            logger.info("committing staged content job_id=%s", job_id)
            self.commit(job, job["staged_content"], step="consume.recovered")
            return "recovered"

        # 3. cache populated after this job was enqueued
        cached = storage.find_completed(owner_id, content_hash, exclude_id=job_id)
        if cached:
            self.commit(job, cached["extracted_content"], step="consume.cache_hit",
                         details={"source_job_id": cached["id"]})
            return "cache_hit"

        if job["status"] not in storage.RUNNABLE_STATUSES:
            logger.info("job not runnable, skipping job_id=%s status=%s", job_id, job["status"])
            return "skipped"

        # 4. claim the (owner, hash) slot
        if not storage.begin_processing(job_id, owner_id, content_hash):
            # Another job of this owner is extracting the same bytes
            if storage.mark_waiting(job_id):
                self._audit(job_id, "consume.waiting", "ok", {})
                notify_best_effort(self.notifier, job_id, storage.WAITING_FOR_CACHE)
                finished = storage.find_completed(owner_id, content_hash, exclude_id=job_id)
                if finished:
                    self.commit(job, finished["extracted_content"], step="consume.cache_hit",
                                 details={"source_job_id": finished["id"]})
                    return "cache_hit"
            return "waiting"
        self._audit(job_id, "consume.processing", "ok", {"attempt": attempts, "delivery": message.attempt})
        notify_best_effort(self.notifier, job_id, storage.PROCESSING)

        data = self.store.get(job["storage_ref"])
        if data is None:
            # No ref in the message, classification pattern-matches it
            logger.error("object missing job_id=%s ref=%s", job_id, job["storage_ref"])
            raise FileNotFoundError("file not found in object storage")

        content = self._extract(job_id, data)

        # 5. stage, then commit atomically with the published artifact
        storage.stage_content(job_id, content)
        self.commit(job, content, step="consume.completed", details={"attempt": attempts})
        return "completed"

    def _extract(self, job_id: str, data: bytes) -> Dict[str, Any]:
        outcome = self.adapter.extract(data, job_id=job_id)
        if not outcome.ok:
            raise ExtractionFailed(outcome.error or "AI parsing failed", outcome.raw_response)
        self._audit(
            job_id, "extract.result", "ok",
            {"strategy": outcome.strategy, "repaired": outcome.repaired},
            input_digest=sha256_bytes(data),
        )
        content = outcome.content or {}
        try:
            return ResumeContent.model_validate(content).model_dump(exclude_none=True)
        except ValidationError as e:
            errors = validation_messages(e)
            logger.info("validation failed, asking for corrections job_id=%s errors=%s", job_id, errors)
        retried = self.adapter.retry_with_feedback(content, errors, job_id=job_id)
        if not retried.ok:
            raise ExtractionFailed(
                f"Schema validation failed: {'; '.join(errors)}", retried.raw_response
            )
        try:
            return ResumeContent.model_validate(retried.content or {}).model_dump(exclude_none=True)
        except ValidationError as e:
            raise ExtractionFailed(
                f"Schema validation failed: {'; '.join(validation_messages(e))}", retried.raw_response
            ) from e

    def commit(self, job: Dict[str, Any], content: Dict[str, Any], step: str, details: Optional[Dict[str, Any]] = None) -> None:
        job_id = job["id"]
        committed = storage.commit_content(job_id, content)
        if committed:
            self._audit(job_id, step, "ok", details or {})
            notify_best_effort(self.notifier, job_id, storage.COMPLETED)
            invalidate_best_effort(self.notifier, job["owner_id"])
        self.fan_out(job["content_hash"], content, job_id)

    def fan_out(self, content_hash: str, content: Dict[str, Any], source_job_id: str) -> int:
        resolved = storage.fan_out(content_hash, content, source_job_id)
        for job_id, _ in resolved:
            self._audit(job_id, "fan_out.completed", "ok", {"source_job_id": source_job_id})
            notify_best_effort(self.notifier, job_id, storage.COMPLETED)
        for owner_id in {owner for _, owner in resolved}:
            invalidate_best_effort(self.notifier, owner_id)
        if resolved:
            logger.info("fan-out resolved %d waiting jobs hash=%s", len(resolved), content_hash[:12])
        return len(resolved)
