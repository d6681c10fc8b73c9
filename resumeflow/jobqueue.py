from __future__ import annotations

import collections
import datetime as _dt
import logging
import threading
from typing import Callable, Deque, List, Optional

from .schemas import DeadLetterMessage, JobMessage
from .settings import settings

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


class Delivery:
    """One delivery of a message. The handler settles it with ack() or retry()."""

    def __init__(self, message: JobMessage, attempts: int) -> None:
        self.message = message
        self.attempts = attempts
        self.outcome: Optional[str] = None
        self.reason: Optional[str] = None

    def ack(self) -> None:
        if self.outcome is None:
            self.outcome = "ack"

    def retry(self, reason: Optional[str] = None) -> None:
        if self.outcome is None:
            self.outcome = "retry"
            self.reason = reason


class LocalQueue:
    """In-process at-least-once queue with a retry budget and a dead-letter hook.

    A message is delivered at most ``max_retries + 1`` times; when the last
    delivery asks for a retry it goes to ``dead_letter_handler`` instead.
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        dead_letter_handler: Optional[Callable[[DeadLetterMessage], None]] = None,
    ) -> None:
        if max_retries is None:
            max_retries = int(settings.retries.get("queue_max_retries", 3))
        self.max_retries = max_retries
        self.dead_letter_handler = dead_letter_handler
        self.dead_letters: List[DeadLetterMessage] = []
        self.published: List[JobMessage] = []
        self._pending: Deque[Delivery] = collections.deque()
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._workers: List[threading.Thread] = []
        self._in_flight = 0
        self._idle = threading.Condition(self._lock)

    def publish(self, message: JobMessage) -> None:
        with self._lock:
            self.published.append(message)
            self._pending.append(Delivery(message, attempts=max(1, message.attempt)))
        self._wakeup.set()

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def _take(self) -> Optional[Delivery]:
        with self._lock:
            if not self._pending:
                return None
            self._in_flight += 1
            return self._pending.popleft()

    def _settle(self, delivery: Delivery) -> None:
        if delivery.outcome == "retry":
            if delivery.attempts > self.max_retries:
                self._dead_letter(delivery)
            else:
                nxt = delivery.attempts + 1
                msg = delivery.message.model_copy(update={"attempt": nxt})
                with self._lock:
                    self._pending.append(Delivery(msg, attempts=nxt))
                self._wakeup.set()
        with self._lock:
            self._in_flight -= 1
            self._idle.notify_all()

    def _dead_letter(self, delivery: Delivery) -> None:
        dlq = DeadLetterMessage(
            original_message=delivery.message,
            failure_reason=delivery.reason or "Max retries exceeded",
            failed_at=_utc_now_iso(),
            attempts=delivery.attempts,
        )
        self.dead_letters.append(dlq)
        logger.warning(
            "message dead-lettered job_id=%s attempts=%d reason=%s",
            delivery.message.job_id, delivery.attempts, dlq.failure_reason,
        )
        if self.dead_letter_handler is not None:
            try:
                self.dead_letter_handler(dlq)
            except Exception:
                logger.exception("dead-letter handler failed job_id=%s", delivery.message.job_id)

    def _run_one(self, delivery: Delivery, handler: Callable[[Delivery], None]) -> None:
        try:
            handler(delivery)
        except Exception as e:
            # Unhandled handler errors are redelivered like an explicit retry
            logger.exception("handler raised job_id=%s", delivery.message.job_id)
            delivery.retry(f"{type(e).__name__}: {e}")
        if delivery.outcome is None:
            delivery.ack()
        self._settle(delivery)

    def drain(self, handler: Callable[[Delivery], None], max_deliveries: int = 1000) -> int:
        """Deliver synchronously until the queue is empty. Returns deliveries made."""
        count = 0
        while count < max_deliveries:
            delivery = self._take()
            if delivery is None:
                break
            self._run_one(delivery, handler)
            count += 1
        return count

    def _worker_loop(self, handler: Callable[[Delivery], None]) -> None:
        while not self._stop.is_set():
            delivery = self._take()
            if delivery is None:
                self._wakeup.wait(timeout=0.5)
                self._wakeup.clear()
                continue
            self._run_one(delivery, handler)

    def start(self, handler: Callable[[Delivery], None], workers: Optional[int] = None) -> None:
        n = int(workers or settings.queue.get("workers", 2))
        self._stop.clear()
        for i in range(n):
            t = threading.Thread(target=self._worker_loop, args=(handler,), daemon=True, name=f"resumeflow-worker-{i}")
            t.start()
            self._workers.append(t)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is pending or in flight."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending and self._in_flight == 0, timeout=timeout)

    def stop(self) -> None:
        self._stop.set()
        self._wakeup.set()
        for t in self._workers:
            t.join(timeout=2.0)
        self._workers = []
