from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Dict, Optional

import requests

from .settings import settings

logger = logging.getLogger(__name__)


class StatusNotifier:
    """Pushes job status transitions and cache invalidations to HTTP observers."""

    def __init__(self, cfg: Optional[Dict[str, Any]] = None, token: Optional[str] = None) -> None:
        cfg = cfg or settings.notify
        self.status_url = cfg.get("status_url") or ""
        self.cache_invalidate_url = cfg.get("cache_invalidate_url") or ""
        self.timeout_s = float(cfg.get("timeout_s", 5))
        self.token = token if token is not None else settings.internal_token()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["X-Internal-Token"] = self.token
        return headers

    def notify(self, job_id: str, status: str, error: Optional[str] = None) -> None:
        if not self.status_url:
            logger.debug("status push skipped, no status_url job_id=%s status=%s", job_id, status)
            return
        body: Dict[str, Any] = {
            "type": "status",
            "status": status,
            "timestamp": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
        }
        if error:
            body["error"] = error
        url = self.status_url.replace("{job_id}", job_id)
        resp = requests.post(url, json=body, headers=self._headers(), timeout=self.timeout_s)
        resp.raise_for_status()

    def invalidate_cache(self, owner_id: str) -> None:
        if not self.cache_invalidate_url:
            logger.debug("cache invalidation skipped, no cache_invalidate_url owner_id=%s", owner_id)
            return
        resp = requests.post(
            self.cache_invalidate_url,
            json={"owner_id": owner_id},
            headers=self._headers(),
            timeout=self.timeout_s,
        )
        resp.raise_for_status()


def notify_best_effort(sink: Any, job_id: str, status: str, error: Optional[str] = None) -> bool:
    if sink is None:
        return False
    try:
        sink.notify(job_id, status, error)
        return True
    except Exception as e:
        logger.warning("status push failed job_id=%s status=%s err=%s:%s", job_id, status, type(e).__name__, e)
        return False


def invalidate_best_effort(sink: Any, owner_id: str) -> bool:
    if sink is None:
        return False
    try:
        sink.invalidate_cache(owner_id)
        return True
    except Exception as e:
        logger.warning("cache invalidation failed owner_id=%s err=%s:%s", owner_id, type(e).__name__, e)
        return False
