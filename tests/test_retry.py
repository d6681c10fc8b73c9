from __future__ import annotations

import pytest

from resumeflow import storage
from resumeflow.errors import RetryRejected
from resumeflow.retry import retry_failed_job


def _failed_job(owner_id="U1", error_type="unknown", attempts=1, retries=0):
    job = storage.create_job(owner_id, f"users/{owner_id}/1/resume.pdf", "c" * 64)
    storage.mark_failed(job["id"], "boom", "Something went wrong", error_type)
    from sqlalchemy import update

    with storage.SessionLocal() as session:
        session.execute(
            update(storage.Job)
            .where(storage.Job.id == job["id"])
            .values(attempt_count=attempts, retry_count=retries)
        )
        session.commit()
    return job["id"]


def _rejected(pipeline, owner_id, job_id):
    with pytest.raises(RetryRejected) as exc:
        retry_failed_job(owner_id, job_id, pipeline.queue)
    return exc.value


def test_retry_requeues_failed_job(pipeline, notifier):
    job_id = _failed_job()
    result = retry_failed_job("U1", job_id, pipeline.queue, notifier=notifier, audit=pipeline.audit)
    assert result == {"job_id": job_id, "status": "queued", "retry_count": 1}
    job = storage.get_job(job_id)
    assert job["status"] == "queued"
    assert job["user_error"] is None
    assert pipeline.queue.published[-1].job_id == job_id
    assert pipeline.queue.published[-1].attempt == 1
    assert notifier.for_job(job_id) == ["queued"]


def test_retried_job_runs_again(pipeline, stage, object_store):
    job_id = _failed_job()
    object_store.put(storage.get_job(job_id)["storage_ref"], b"%PDF-1.4 retry me")
    retry_failed_job("U1", job_id, pipeline.queue)
    pipeline.drain()
    assert storage.get_job(job_id)["status"] == "completed"


def test_retry_rules(pipeline):
    assert _rejected(pipeline, "U1", "missing").code == "not_found"
    assert _rejected(pipeline, "U2", _failed_job("U1")).http_status == 403
    assert _rejected(pipeline, "U1", _failed_job(attempts=6)).code == "max_attempts_exceeded"
    assert _rejected(pipeline, "U1", _failed_job(error_type="invalid_pdf")).code == "permanent_error"
    assert _rejected(pipeline, "U1", _failed_job(retries=2)).code == "max_retries_exceeded"

    queued = storage.create_job("U1", "users/U1/1/resume.pdf", "d" * 64)
    storage.mark_queued(queued["id"])
    assert _rejected(pipeline, "U1", queued["id"]).code == "not_failed"


def test_publish_failure_restores_failed_state(pipeline):
    job_id = _failed_job()

    def broken(message):
        raise ConnectionError("queue down")

    pipeline.queue.publish = broken
    assert _rejected(pipeline, "U1", job_id).code == "queue_unavailable"
    job = storage.get_job(job_id)
    assert job["status"] == "failed"
    assert job["retry_count"] == 1
