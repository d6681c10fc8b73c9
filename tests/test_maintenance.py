from __future__ import annotations

from sqlalchemy import update

from resumeflow import storage
from resumeflow.maintenance import recover_orphaned_jobs, release_stranded_waiting, resolve_waiting_jobs

from conftest import RESUME


def _age(job_id: str, **values) -> None:
    with storage.SessionLocal() as session:
        session.execute(update(storage.Job).where(storage.Job.id == job_id).values(**values))
        session.commit()


def test_orphaned_pending_claims_are_republished(pipeline):
    old = storage.create_job("U1", "users/U1/1/a.pdf", "a" * 64)
    _age(old["id"], created_at="2020-01-01T00:00:00+00:00")
    fresh = storage.create_job("U1", "users/U1/2/b.pdf", "b" * 64)
    capped = storage.create_job("U1", "users/U1/3/c.pdf", "c" * 64)
    _age(capped["id"], created_at="2020-01-01T00:00:00+00:00", attempt_count=6)

    summary = recover_orphaned_jobs(pipeline.queue)

    assert summary["found"] == 1
    assert summary["recovered"] == 1
    assert [m.job_id for m in pipeline.queue.published] == [old["id"]]
    assert storage.get_job(old["id"])["status"] == "queued"
    assert storage.get_job(fresh["id"])["status"] == "pending_claim"


def test_waiting_jobs_resolved_from_completed_hash(pipeline):
    done = storage.create_job("U1", "users/U1/1/a.pdf", "e" * 64)
    storage.commit_content(done["id"], RESUME)
    waiting = storage.create_job("U2", "users/U2/1/a.pdf", "e" * 64)
    storage.mark_waiting(waiting["id"])

    summary = resolve_waiting_jobs(pipeline.runner)

    assert summary["hashes"] == 1
    assert summary["resolved"] == 1
    assert storage.get_job(waiting["id"])["status"] == "completed"
    assert storage.get_artifact("U2")["job_id"] == waiting["id"]


def test_stranded_waiting_jobs_are_released(pipeline, object_store):
    winner = storage.create_job("U1", "users/U1/1/a.pdf", "f" * 64)
    storage.mark_failed(winner["id"], "boom", "Something went wrong")
    stranded = storage.create_job("U1", "users/U1/2/a.pdf", "f" * 64)
    storage.mark_waiting(stranded["id"])
    _age(stranded["id"], updated_at="2020-01-01T00:00:00+00:00")
    object_store.put("users/U1/2/a.pdf", b"%PDF-1.4 stranded")

    summary = release_stranded_waiting(pipeline.queue)
    assert (summary["found"], summary["released"], summary["published"]) == (1, 1, 1)

    pipeline.drain()
    assert storage.get_job(stranded["id"])["status"] == "completed"


def test_waiting_job_with_live_sibling_is_not_released(pipeline):
    sibling = storage.create_job("U1", "users/U1/1/a.pdf", "9" * 64)
    storage.mark_queued(sibling["id"])
    waiting = storage.create_job("U1", "users/U1/2/a.pdf", "9" * 64)
    storage.mark_waiting(waiting["id"])
    _age(waiting["id"], updated_at="2020-01-01T00:00:00+00:00")

    assert release_stranded_waiting(pipeline.queue)["found"] == 0
