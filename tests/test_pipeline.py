from __future__ import annotations

from sqlalchemy.exc import OperationalError

from resumeflow import storage
from resumeflow.schemas import ClaimRequest, JobMessage

from conftest import RESUME, pdf_bytes


def _claim(pipeline, stage, owner_id: str, data: bytes):
    return pipeline.claims.claim(owner_id, ClaimRequest(staging_ref=stage(data)))


def test_example_scenario_two_owners_extract_separately(pipeline, stage, capability, notifier):
    data = pdf_bytes("shared resume")

    first = _claim(pipeline, stage, "U1", data)
    assert first.status == "queued"
    assert pipeline.drain() == 1
    job1 = storage.get_job(first.job_id)
    assert job1["status"] == "completed"
    assert job1["attempt_count"] == 1
    assert job1["storage_ref"].startswith("users/U1/")
    assert storage.get_artifact("U1")["job_id"] == first.job_id

    second = _claim(pipeline, stage, "U2", data)
    assert second.status == "queued"
    assert not second.cached
    pipeline.drain()
    job2 = storage.get_job(second.job_id)
    assert job2["status"] == "completed"
    assert job2["content_hash"] == job1["content_hash"]
    assert storage.get_artifact("U2")["job_id"] == second.job_id

    # Dedup is per owner: both owners paid for an extraction
    assert len([c for c in capability.calls if c["schema"]]) == 2
    assert notifier.for_job(first.job_id)[-1] == "completed"
    assert "U1" in notifier.invalidated


def test_staging_object_is_moved_to_owner_namespace(pipeline, stage, object_store):
    ref = stage(pdf_bytes("move me"))
    resp = pipeline.claims.claim("U1", ClaimRequest(staging_ref=ref))
    job = storage.get_job(resp.job_id)
    assert object_store.get(ref) is None
    assert object_store.get(job["storage_ref"]) == pdf_bytes("move me")


def test_redelivery_of_completed_job_is_acked_without_side_effects(pipeline, stage, capability):
    resp = _claim(pipeline, stage, "U1", pdf_bytes("redeliver"))
    pipeline.drain()
    job = storage.get_job(resp.job_id)
    message = JobMessage(
        job_id=job["id"], owner_id="U1", storage_ref=job["storage_ref"], content_hash=job["content_hash"]
    )
    for _ in range(3):
        pipeline.queue.publish(message)
    pipeline.drain()

    assert len(capability.calls) == 1
    assert storage.count_artifacts("U1") == 1
    after = storage.get_job(resp.job_id)
    assert after["status"] == "completed"
    assert after["attempt_count"] == 1
    assert after["parsed_at"] == job["parsed_at"]


def test_same_owner_same_bytes_extracts_once(pipeline, stage, capability):
    data = pdf_bytes("duplicate")
    a = _claim(pipeline, stage, "U1", data)
    b = _claim(pipeline, stage, "U1", data)
    assert a.status == b.status == "queued"
    pipeline.drain()

    assert storage.get_job(a.job_id)["status"] == "completed"
    assert storage.get_job(b.job_id)["status"] == "completed"
    assert len(capability.calls) == 1
    assert storage.count_artifacts("U1") == 1
    steps = [s["step"] for s in storage.get_audit_steps(b.job_id)]
    assert "consume.cache_hit" in steps

    # A later upload of the same bytes completes at claim time
    c = _claim(pipeline, stage, "U1", data)
    assert c.status == "completed" and c.cached
    assert len(capability.calls) == 1


def test_claim_while_in_flight_waits_and_is_resolved_by_fan_out(pipeline, stage, capability, notifier):
    data = pdf_bytes("in flight")
    a = _claim(pipeline, stage, "U1", data)
    job_a = storage.get_job(a.job_id)
    assert storage.begin_processing(a.job_id, "U1", job_a["content_hash"])

    b = _claim(pipeline, stage, "U1", data)
    assert b.status == "waiting_for_cache"
    assert b.waiting_for_cache

    pipeline.drain()
    assert storage.get_job(a.job_id)["status"] == "completed"
    job_b = storage.get_job(b.job_id)
    assert job_b["status"] == "completed"
    assert job_b["extracted_content"] == storage.get_job(a.job_id)["extracted_content"]
    assert len(capability.calls) == 1
    assert "completed" in notifier.for_job(b.job_id)
    steps = [s["step"] for s in storage.get_audit_steps(b.job_id)]
    assert "fan_out.completed" in steps


def test_fan_out_completes_waiting_jobs_of_every_owner(pipeline, stage):
    data = pdf_bytes("fan out")
    a = _claim(pipeline, stage, "U1", data)
    content_hash = storage.get_job(a.job_id)["content_hash"]
    others = []
    for owner in ("U2", "U3", "U3"):
        job = storage.create_job(owner, f"users/{owner}/1/resume.pdf", content_hash)
        assert storage.mark_waiting(job["id"])
        others.append(job)

    pipeline.drain()

    for job in others:
        assert storage.get_job(job["id"])["status"] == "completed"
    assert storage.count_artifacts() == 3
    # The later of the owner's two waiting jobs is the published one
    assert storage.get_artifact("U3")["job_id"] == others[2]["id"]


def test_staged_content_is_committed_without_extracting_again(pipeline, stage, capability):
    resp = _claim(pipeline, stage, "U1", pdf_bytes("crash"))
    job = storage.get_job(resp.job_id)
    # A previous delivery extracted and staged, then died before committing
    assert storage.begin_processing(job["id"], "U1", job["content_hash"])
    staged = dict(RESUME, full_name="Staged Name")
    storage.stage_content(job["id"], staged)

    pipeline.drain()

    done = storage.get_job(job["id"])
    assert done["status"] == "completed"
    assert done["extracted_content"]["full_name"] == "Staged Name"
    assert done["staged_content"] is None
    assert capability.calls == []
    assert storage.get_artifact("U1")["preview_name"] == "Staged Name"


def test_validation_failure_gets_one_feedback_attempt(pipeline, stage, capability):
    capability.script = [{"headline": "Engineer"}, RESUME]
    resp = _claim(pipeline, stage, "U1", pdf_bytes("needs feedback"))
    pipeline.drain()

    job = storage.get_job(resp.job_id)
    assert job["status"] == "completed"
    assert job["extracted_content"]["full_name"] == "Ada Lovelace"
    assert len(capability.calls) == 2
    assert "full_name" in capability.calls[1]["prompt"]


def test_validation_failure_after_feedback_fails_with_field_message(pipeline, stage, capability, notifier):
    capability.script = [{"headline": "Engineer"}]
    resp = _claim(pipeline, stage, "U1", pdf_bytes("no name"))
    pipeline.drain()

    job = storage.get_job(resp.job_id)
    assert job["status"] == "failed"
    assert job["last_error_type"] == "parse_validation_error"
    assert job["user_error"] == "We couldn't find the full name in your resume. Please ensure it's clearly visible."
    assert notifier.for_job(resp.job_id)[-1] == "failed"
    assert storage.get_artifact("U1") is None
    # Permanent errors are acked, not redelivered
    assert pipeline.queue.dead_letters == []


def test_transient_failures_exhaust_queue_budget_into_dead_letter(pipeline, stage, capability):
    capability.script = [TimeoutError("Extraction request timed out after 90s")]
    resp = _claim(pipeline, stage, "U1", pdf_bytes("slow"))
    deliveries = pipeline.drain()

    assert deliveries == 4
    assert len(pipeline.queue.dead_letters) == 1
    job = storage.get_job(resp.job_id)
    assert job["status"] == "failed"
    assert job["attempt_count"] == 4
    assert job["last_error_type"] == "service_binding_timeout"
    assert job["last_error"].startswith("Permanently failed after 4 attempts:")
    assert job["user_error"] == (
        "Processing your resume took too long. Please try again in a few minutes."
    )


def test_missing_object_fails_permanently(pipeline, stage, object_store):
    resp = _claim(pipeline, stage, "U1", pdf_bytes("vanishing"))
    object_store.delete(storage.get_job(resp.job_id)["storage_ref"])
    pipeline.drain()
    job = storage.get_job(resp.job_id)
    assert job["status"] == "failed"
    assert job["last_error_type"] == "file_not_found"


def test_unknown_job_message_is_acked(pipeline):
    pipeline.queue.publish(
        JobMessage(job_id="nope", owner_id="U1", storage_ref="users/U1/1/r.pdf", content_hash="0" * 64)
    )
    assert pipeline.drain() == 1
    assert pipeline.queue.dead_letters == []


def test_notifier_failures_do_not_change_outcome(object_store, stage):
    from resumeflow.service import build_pipeline
    from resumeflow.settings import settings

    from conftest import FakeCapability, RecordingNotifier, plain_text

    pipe = build_pipeline(
        settings,
        object_store=object_store,
        capability=FakeCapability(),
        notifier=RecordingNotifier(fail=True),
        text_extractor=plain_text,
    )
    resp = pipe.claims.claim("U1", ClaimRequest(staging_ref=stage(pdf_bytes("quiet"))))
    pipe.drain()
    assert storage.get_job(resp.job_id)["status"] == "completed"


def test_worker_threads_drive_jobs_to_completion(pipeline, stage, capability):
    pipeline.start_workers(2)
    try:
        ids = [_claim(pipeline, stage, f"U{i}", pdf_bytes(f"threaded {i}")).job_id for i in range(3)]
        assert pipeline.queue.join(timeout=30)
    finally:
        pipeline.stop()
    assert [storage.get_job(i)["status"] for i in ids] == ["completed"] * 3
    assert len(capability.calls) == 3


def test_transient_commit_failure_reuses_staged_result(pipeline, stage, capability, monkeypatch):
    real_commit = storage.commit_content
    failed_once = []

    def flaky_commit(job_id, content):
        if not failed_once:
            failed_once.append(job_id)
            raise OperationalError("UPDATE jobs", {}, Exception("database is locked"))
        return real_commit(job_id, content)

    monkeypatch.setattr(storage, "commit_content", flaky_commit)
    resp = _claim(pipeline, stage, "U1", pdf_bytes("locked db"))

    assert pipeline.drain() == 2
    job = storage.get_job(resp.job_id)
    assert job["status"] == "completed"
    assert job["attempt_count"] == 2
    assert job["staged_content"] is None
    assert len(capability.calls) == 1
    assert storage.get_artifact("U1")["job_id"] == resp.job_id


def test_losing_processing_race_waits_then_fan_out_completes(pipeline, capability, notifier):
    content_hash = "e" * 64
    first = storage.create_job("U1", "users/U1/1/a.pdf", content_hash)
    assert storage.begin_processing(first["id"], "U1", content_hash)
    second = storage.create_job("U1", "users/U1/2/a.pdf", content_hash)
    storage.mark_queued(second["id"])
    pipeline.queue.publish(
        JobMessage(job_id=second["id"], owner_id="U1", storage_ref=second["storage_ref"], content_hash=content_hash)
    )

    assert pipeline.drain() == 1
    assert storage.get_job(second["id"])["status"] == "waiting_for_cache"
    assert notifier.for_job(second["id"]) == ["waiting_for_cache"]
    assert capability.calls == []

    pipeline.runner.commit(storage.get_job(first["id"]), RESUME, step="consume.completed")

    done = storage.get_job(second["id"])
    assert done["status"] == "completed"
    assert done["extracted_content"]["full_name"] == "Ada Lovelace"
    assert storage.get_artifact("U1")["job_id"] == second["id"]


def test_stale_message_for_failed_job_does_not_pick_up_cache(pipeline, capability):
    content_hash = "f" * 64
    done = storage.create_job("U1", "users/U1/1/a.pdf", content_hash)
    storage.commit_content(done["id"], RESUME)
    failed = storage.create_job("U1", "users/U1/2/a.pdf", content_hash)
    storage.mark_failed(failed["id"], "PDF is corrupt", "Your PDF looks damaged.", "invalid_pdf")
    pipeline.queue.publish(
        JobMessage(job_id=failed["id"], owner_id="U1", storage_ref=failed["storage_ref"], content_hash=content_hash)
    )

    assert pipeline.drain() == 1
    job = storage.get_job(failed["id"])
    assert job["status"] == "failed"
    assert job["attempt_count"] == 0
    assert job["extracted_content"] is None
    assert capability.calls == []
