from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Dict, Optional, Union

import orjson
import requests

from . import storage
from .errors import QueueErrorType, classify_user_error
from .notifications import notify_best_effort
from .schemas import DeadLetterMessage, JobMessage
from .settings import settings

logger = logging.getLogger(__name__)

ALERT_CHANNELS = ("log", "webhook", "email")


def send_alert(payload: Dict[str, Any], channel: str, webhook_url: str = "", timeout_s: float = 5.0) -> None:
    """Operator-visible alert. Never raises."""
    if channel == "webhook":
        if not webhook_url:
            logger.error("DLQ_ALERT (no webhook_url configured) %s", orjson.dumps(payload).decode())
            return
        try:
            resp = requests.post(
                webhook_url,
                json={"text": "Resume parsing permanently failed", **payload},
                timeout=timeout_s,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error("DLQ webhook alert failed err=%s:%s payload=%s", type(e).__name__, e, orjson.dumps(payload).decode())
        return
    if channel == "email":
        # No mail integration; the log channel carries it
        logger.error("DLQ_ALERT_EMAIL %s", orjson.dumps(payload).decode())
        return
    logger.error("DLQ_ALERT %s", orjson.dumps(payload).decode())


class DeadLetterHandler:
    """Terminal path for messages whose queue retry budget is exhausted."""

    def __init__(self, notifier: Any = None, audit: Any = None, alerts_cfg: Optional[Dict[str, Any]] = None) -> None:
        cfg = alerts_cfg or settings.alerts
        self.channel = cfg.get("channel", "log")
        if self.channel not in ALERT_CHANNELS:
            raise ValueError(f"Unknown alert channel: {self.channel}")
        self.webhook_url = cfg.get("webhook_url") or ""
        self.notifier = notifier
        self.audit = audit

    def handle(self, message: Union[JobMessage, DeadLetterMessage]) -> Dict[str, Any]:
        if isinstance(message, DeadLetterMessage):
            original = message.original_message
            reason = message.failure_reason
        else:
            original = message
            reason = "Unknown (moved to DLQ)"

        job = None
        lookup_failed = False
        try:
            job = storage.get_job(original.job_id)
        except Exception as e:
            lookup_failed = True
            logger.error("DLQ job lookup failed job_id=%s err=%s:%s", original.job_id, type(e).__name__, e)
        attempts = job["attempt_count"] if job else original.attempt
        error_type = (job or {}).get("last_error_type") or QueueErrorType.UNKNOWN.value
        raw = f"Permanently failed after {attempts} attempts: {reason}"

        # The alert below goes out whatever happens to the store
        marked = False
        if job is None:
            if not lookup_failed:
                logger.error("DLQ message for unknown job job_id=%s", original.job_id)
        elif job["status"] == storage.COMPLETED:
            logger.info("DLQ message for completed job ignored job_id=%s", original.job_id)
        else:
            _, user_message = classify_user_error(reason)
            try:
                marked = storage.mark_failed(original.job_id, raw, user_message, error_type)
            except Exception as e:
                logger.error("DLQ mark_failed failed job_id=%s err=%s:%s", original.job_id, type(e).__name__, e)
            if self.audit is not None:
                try:
                    self.audit.log_event(
                        original.job_id, "dead_letter", "error",
                        {"reason": reason, "error_type": error_type, "attempts": attempts},
                    )
                except Exception:
                    logger.exception("DLQ audit write failed job_id=%s", original.job_id)
            if marked:
                notify_best_effort(self.notifier, original.job_id, storage.FAILED, user_message)

        payload = {
            "job_id": original.job_id,
            "owner_id": original.owner_id,
            "failure_reason": reason,
            "error_type": error_type,
            "total_attempts": attempts,
            "timestamp": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
        }
        send_alert(payload, self.channel, self.webhook_url)
        return {**payload, "marked_failed": marked}

    __call__ = handle
