from __future__ import annotations

import datetime as _dt
import threading
import time
from typing import Dict, Any, Optional

import orjson

from .hashing import chain_next
from .schemas import AuditEvent
from .settings import settings
from . import storage


class AuditTrailAgent:
    """Hash-chained event log per job: artifacts/<job_id>/audit.jsonl plus the audit table."""

    def __init__(self) -> None:
        self._last_hash_by_job: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _resolve_prev_hash(self, job_id: str) -> str:
        if job_id in self._last_hash_by_job:
            return self._last_hash_by_job[job_id]
        # Recover from DB after a restart
        last = storage.get_last_audit_hash(job_id)
        return last or ""

    def log_event(
        self,
        job_id: str,
        step: str,
        status: str,
        details: Dict[str, Any],
        input_digest: Optional[str] = None,
        output_digest: Optional[str] = None,
    ) -> AuditEvent:
        ts_iso = _dt.datetime.now(tz=_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        ts_ns = time.perf_counter_ns()

        # Two workers may log for the same job (fan-out); keep the chain linear
        with self._lock:
            prev_hash = self._resolve_prev_hash(job_id)
            event_dict = {
                "job_id": job_id,
                "step": step,
                "status": status,
                "ts_iso": ts_iso,
                "ts_ns": ts_ns,
                "input_digest": input_digest,
                "output_digest": output_digest,
                "details": details,
                "prev_event_hash": prev_hash,
            }
            event_hash = chain_next(prev_hash, event_dict)
            event_full = AuditEvent(**{**event_dict, "event_hash": event_hash})

            if settings.artifacts.get("keep_audit_jsonl", True):
                audit_path = settings.artifacts_dir_for(job_id) / "audit.jsonl"
                line = orjson.dumps(event_full.model_dump(), option=orjson.OPT_SORT_KEYS)
                with open(audit_path, "ab") as f:
                    f.write(line + b"\n")

            storage.append_audit(event_full)
            self._last_hash_by_job[job_id] = event_hash
        return event_full
