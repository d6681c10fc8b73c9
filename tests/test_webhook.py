from __future__ import annotations

from resumeflow import storage
from resumeflow.schemas import ProviderCallback
from resumeflow.webhook import handle_provider_callback

from conftest import RESUME


def _external_job(owner_id="U1", content_hash="1" * 64):
    job = storage.create_job(owner_id, f"users/{owner_id}/1/a.pdf", content_hash)
    storage.mark_queued(job["id"])
    storage.attach_external_job(job["id"], "ext-1")
    return job["id"]


def test_success_commits_and_redelivery_is_skipped(pipeline, notifier):
    job_id = _external_job()
    cb = ProviderCallback(external_job_id="ext-1", status="succeeded", output={"name": "Ada Lovelace"})

    assert handle_provider_callback(cb, pipeline.runner) == {"result": "completed", "job_id": job_id}
    first = storage.get_job(job_id)
    assert first["extracted_content"]["full_name"] == "Ada Lovelace"

    again = handle_provider_callback(cb, pipeline.runner)
    assert again["result"] == "skipped"
    assert storage.get_job(job_id)["parsed_at"] == first["parsed_at"]
    assert notifier.for_job(job_id).count("completed") == 1


def test_success_fans_out_to_waiting_jobs(pipeline):
    job_id = _external_job(content_hash="2" * 64)
    waiting = storage.create_job("U2", "users/U2/1/a.pdf", "2" * 64)
    storage.mark_waiting(waiting["id"])

    handle_provider_callback(
        ProviderCallback(external_job_id="ext-1", status="succeeded", output=RESUME), pipeline.runner
    )
    assert storage.get_job(job_id)["status"] == "completed"
    assert storage.get_job(waiting["id"])["status"] == "completed"


def test_invalid_output_and_failures_mark_failed(pipeline):
    job_id = _external_job()
    result = handle_provider_callback(
        ProviderCallback(external_job_id="ext-1", status="succeeded", output={"headline": "x"}), pipeline.runner
    )
    assert result["result"] == "failed"
    assert "full name" in result["error"]
    assert storage.get_job(job_id)["status"] == "failed"


def test_canceled_and_unknown_and_non_final(pipeline):
    job_id = _external_job()
    assert handle_provider_callback(
        ProviderCallback(external_job_id="ext-1", status="processing"), pipeline.runner
    )["result"] == "ignored"
    assert handle_provider_callback(
        ProviderCallback(external_job_id="nope", status="failed"), pipeline.runner
    )["result"] == "ignored"
    result = handle_provider_callback(
        ProviderCallback(external_job_id="ext-1", status="canceled"), pipeline.runner
    )
    assert result["result"] == "failed"
    assert storage.get_job(job_id)["last_error"] == "Provider job canceled"
