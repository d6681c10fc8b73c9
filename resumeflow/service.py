from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from . import storage
from .audit import AuditTrailAgent
from .claim import ClaimHandler
from .consumer import JobRunner
from .dead_letter import DeadLetterHandler
from .extraction import ExtractionAdapter
from .jobqueue import LocalQueue
from .notifications import StatusNotifier
from .objectstore import make_object_store
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Pipeline:
    """All collaborators of one process, wired from settings."""

    def __init__(
        self,
        object_store: Any,
        queue: LocalQueue,
        notifier: Any,
        audit: AuditTrailAgent,
        adapter: ExtractionAdapter,
        runner: JobRunner,
        claims: ClaimHandler,
        dead_letter: DeadLetterHandler,
    ) -> None:
        self.object_store = object_store
        self.queue = queue
        self.notifier = notifier
        self.audit = audit
        self.adapter = adapter
        self.runner = runner
        self.claims = claims
        self.dead_letter = dead_letter

    def drain(self) -> int:
        return self.queue.drain(self.runner.process)

    def start_workers(self, workers: Optional[int] = None) -> None:
        self.queue.start(self.runner.process, workers)

    def stop(self) -> None:
        self.queue.stop()


def build_pipeline(
    cfg: Optional[Settings] = None,
    object_store: Any = None,
    capability: Any = None,
    notifier: Any = None,
    text_extractor: Optional[Callable[[bytes], str]] = None,
    referral_hook: Optional[Callable[[str, str], Any]] = None,
) -> Pipeline:
    cfg = cfg or default_settings
    if storage.engine is None or storage.engine.url.render_as_string(hide_password=False) != cfg.database_url():
        storage.configure(cfg.database_url())
    store = object_store if object_store is not None else make_object_store(cfg.storage)
    notifier = notifier if notifier is not None else StatusNotifier(cfg.notify)
    audit = AuditTrailAgent()
    adapter_kwargs = {"capability": capability, "audit": audit, "llm_cfg": cfg.llm}
    if text_extractor is not None:
        adapter_kwargs["text_extractor"] = text_extractor
    adapter = ExtractionAdapter(**adapter_kwargs)
    runner = JobRunner(store, adapter, notifier=notifier, audit=audit)
    dead_letter = DeadLetterHandler(notifier=notifier, audit=audit, alerts_cfg=cfg.alerts)
    queue = LocalQueue(
        max_retries=int(cfg.retries.get("queue_max_retries", 3)),
        dead_letter_handler=dead_letter.handle,
    )
    claims = ClaimHandler(store, queue, notifier=notifier, audit=audit, referral_hook=referral_hook, claim_cfg=cfg.claim)
    logger.debug("pipeline built db=%s storage=%s", cfg.database_url(), cfg.storage.get("backend"))
    return Pipeline(store, queue, notifier, audit, adapter, runner, claims, dead_letter)
