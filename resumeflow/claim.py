from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from . import storage
from .documents import is_pdf
from .errors import ClaimError, classify_queue_error, classify_user_error
from .hashing import content_digest
from .notifications import invalidate_best_effort, notify_best_effort
from .objectstore import delete_best_effort, is_staging_ref, owner_ref
from .schemas import ClaimRequest, ClaimResponse, JobMessage
from .settings import settings

logger = logging.getLogger(__name__)


class ClaimHandler:
    """Attach an anonymous staged upload to an owner and start its processing.

    Every path that creates a job row leaves it completed, waiting_for_cache,
    queued or failed before returning.
    """

    def __init__(
        self,
        object_store: Any,
        queue: Any,
        notifier: Any = None,
        audit: Any = None,
        referral_hook: Optional[Callable[[str, str], Any]] = None,
        claim_cfg: Optional[Dict[str, Any]] = None,
    ) -> None:
        cfg = claim_cfg or settings.claim
        self.store = object_store
        self.queue = queue
        self.notifier = notifier
        self.audit = audit
        self.referral_hook = referral_hook
        self.max_file_bytes = int(cfg.get("max_file_bytes", 10 * 1024 * 1024))
        self.recent_claim_window_s = float(cfg.get("recent_claim_window_s", 120))

    def _audit(self, job_id: str, step: str, status: str, details: Dict[str, Any], **kw) -> None:
        if self.audit is None:
            return
        try:
            self.audit.log_event(job_id, step, status, details, **kw)
        except Exception:
            logger.exception("audit write failed job_id=%s step=%s", job_id, step)

    def _fetch(self, owner_id: str, ref: str) -> Optional[bytes]:
        try:
            return self.store.get(ref)
        except Exception as e:
            logger.error("staging fetch failed ref=%s err=%s:%s", ref, type(e).__name__, e)
            raise ClaimError(
                "storage_unavailable", "Failed to retrieve file. The upload may have expired.", 500
            ) from e

    def _link_referral(self, owner_id: str, token: Optional[str]) -> None:
        if not token or self.referral_hook is None:
            return
        try:
            self.referral_hook(owner_id, token)
        except Exception as e:
            logger.warning("referral link failed owner_id=%s err=%s:%s", owner_id, type(e).__name__, e)

    def _move_bytes(self, job_id: str, owner_id: str, staging_ref: str, data: bytes) -> str:
        new_ref = owner_ref(owner_id, staging_ref)
        self.store.put(new_ref, data, "application/pdf")
        storage.set_storage_ref(job_id, new_ref)
        delete_best_effort(self.store, staging_ref)
        return new_ref

    def _complete_from_cache(self, job_id: str, owner_id: str, content: Dict[str, Any], source_job_id: str) -> bool:
        committed = storage.commit_content(job_id, content)
        if committed:
            self._audit(job_id, "claim.cache_hit", "ok", {"source_job_id": source_job_id})
            notify_best_effort(self.notifier, job_id, storage.COMPLETED)
            invalidate_best_effort(self.notifier, owner_id)
        return committed

    def claim(self, owner_id: str, request: ClaimRequest) -> ClaimResponse:
        staging_ref = request.staging_ref
        if not is_staging_ref(staging_ref):
            raise ClaimError("invalid_ref", "Invalid upload key. Must be a temporary upload.", 400)

        data = self._fetch(owner_id, staging_ref)
        if data is None:
            recent = storage.find_recent_claim(owner_id, self.recent_claim_window_s)
            if recent:
                logger.info("staging object gone, returning recent claim owner_id=%s job_id=%s", owner_id, recent["id"])
                return ClaimResponse(job_id=recent["id"], status=recent["status"], already_claimed=True)
            raise ClaimError("not_found", "File not found. The upload may have expired.", 404)
        if len(data) > self.max_file_bytes:
            raise ClaimError(
                "file_too_large",
                f"File size exceeds {self.max_file_bytes // (1024 * 1024)}MB limit",
                400,
            )
        if not is_pdf(data):
            raise ClaimError("invalid_format", "Invalid PDF format", 400)

        content_hash = content_digest(data)
        job = storage.create_job(owner_id, staging_ref, content_hash)
        job_id = job["id"]
        self._audit(
            job_id, "claim.created", "ok",
            {"owner_id": owner_id, "staging_ref": staging_ref, "size": len(data), "cfg_hash": settings.cfg_hash},
            input_digest=content_hash,
        )

        self._link_referral(owner_id, request.referral_token)

        try:
            return self._resolve(job_id, owner_id, staging_ref, content_hash, data)
        except Exception as e:
            raw = f"{type(e).__name__}: {e}"
            qerr = classify_queue_error(e)
            _, user_message = classify_user_error(raw)
            logger.exception("claim failed job_id=%s", job_id)
            storage.mark_failed(job_id, raw, user_message, qerr.error_type.value)
            self._audit(job_id, "claim.failed", "error", {"error": raw[:200], "error_type": qerr.error_type.value})
            notify_best_effort(self.notifier, job_id, storage.FAILED, user_message)
            raise ClaimError("processing_failed", "Failed to process upload. Please try again.", 500) from e

    def _resolve(self, job_id: str, owner_id: str, staging_ref: str, content_hash: str, data: bytes) -> ClaimResponse:
        cached = storage.find_completed(owner_id, content_hash, exclude_id=job_id)
        if cached:
            self._move_bytes(job_id, owner_id, staging_ref, data)
            self._complete_from_cache(job_id, owner_id, cached["extracted_content"], cached["id"])
            return ClaimResponse(job_id=job_id, status=storage.COMPLETED, cached=True)

        in_flight = storage.find_processing(owner_id, content_hash, exclude_id=job_id)
        if in_flight:
            self._move_bytes(job_id, owner_id, staging_ref, data)
            storage.mark_waiting(job_id)
            self._audit(job_id, "claim.waiting", "ok", {"in_flight_job_id": in_flight["id"]})
            notify_best_effort(self.notifier, job_id, storage.WAITING_FOR_CACHE)
            # The in-flight job may have committed before we were marked waiting
            finished = storage.find_completed(owner_id, content_hash, exclude_id=job_id)
            if finished and self._complete_from_cache(job_id, owner_id, finished["extracted_content"], finished["id"]):
                return ClaimResponse(job_id=job_id, status=storage.COMPLETED, cached=True)
            return ClaimResponse(job_id=job_id, status=storage.WAITING_FOR_CACHE, waiting_for_cache=True)

        new_ref = self._move_bytes(job_id, owner_id, staging_ref, data)
        self.queue.publish(
            JobMessage(job_id=job_id, owner_id=owner_id, storage_ref=new_ref, content_hash=content_hash, attempt=1)
        )
        # A fast consumer may already own the job; that is fine
        storage.mark_queued(job_id)
        self._audit(job_id, "claim.queued", "ok", {"storage_ref": new_ref})
        notify_best_effort(self.notifier, job_id, storage.QUEUED)
        return ClaimResponse(job_id=job_id, status=storage.QUEUED)
