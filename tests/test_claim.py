from __future__ import annotations

import pytest

from resumeflow import storage
from resumeflow.errors import ClaimError
from resumeflow.schemas import ClaimRequest

from conftest import pdf_bytes


def _claim(pipeline, owner_id, ref, token=None):
    return pipeline.claims.claim(owner_id, ClaimRequest(staging_ref=ref, referral_token=token))


@pytest.mark.parametrize("ref", ["users/U9/1/resume.pdf", "temp/../users/U9/1/resume.pdf", "temp/", ""])
def test_only_staging_refs_are_claimable(pipeline, ref):
    with pytest.raises(ClaimError) as exc:
        _claim(pipeline, "U1", ref)
    assert exc.value.code == "invalid_ref"
    assert exc.value.http_status == 400
    assert storage.list_jobs() == []


def test_missing_object_is_not_found(pipeline):
    with pytest.raises(ClaimError) as exc:
        _claim(pipeline, "U1", "temp/gone/resume.pdf")
    assert exc.value.code == "not_found"
    assert exc.value.http_status == 404


def test_double_submit_returns_recent_claim(pipeline, stage):
    ref = stage(pdf_bytes("double"))
    first = _claim(pipeline, "U1", ref)
    again = _claim(pipeline, "U1", ref)
    assert again.already_claimed
    assert again.job_id == first.job_id
    assert len(storage.list_jobs("U1")) == 1


def test_rejects_oversized_and_non_pdf(pipeline, stage):
    pipeline.claims.max_file_bytes = 16
    with pytest.raises(ClaimError) as exc:
        _claim(pipeline, "U1", stage(pdf_bytes("x" * 64)))
    assert exc.value.code == "file_too_large"

    pipeline.claims.max_file_bytes = 1024
    with pytest.raises(ClaimError) as exc:
        _claim(pipeline, "U1", stage(b"GIF89a not a pdf"))
    assert exc.value.code == "invalid_format"
    assert storage.list_jobs() == []


def test_referral_hook_failure_does_not_block_claim(pipeline, stage):
    linked = []

    def hook(owner_id, token):
        linked.append((owner_id, token))
        raise RuntimeError("referrals down")

    pipeline.claims.referral_hook = hook
    resp = _claim(pipeline, "U1", stage(pdf_bytes("referred")), token="REF123")
    assert resp.status == "queued"
    assert linked == [("U1", "REF123")]


def test_publish_failure_marks_job_failed(pipeline, stage, notifier):
    def broken_publish(message):
        raise ConnectionError("queue unreachable")

    pipeline.claims.queue.publish = broken_publish
    with pytest.raises(ClaimError) as exc:
        _claim(pipeline, "U1", stage(pdf_bytes("no queue")))
    assert exc.value.code == "processing_failed"
    assert exc.value.http_status == 500
    (job,) = storage.list_jobs("U1")
    assert job["status"] == "failed"
    assert job["user_error"]
    assert notifier.for_job(job["id"]) == ["failed"]


def test_every_created_job_leaves_pending_claim(pipeline, stage):
    data = pdf_bytes("states")
    _claim(pipeline, "U1", stage(data))
    pipeline.drain()
    _claim(pipeline, "U1", stage(data))
    _claim(pipeline, "U2", stage(data))
    assert all(j["status"] != "pending_claim" for j in storage.list_jobs())


def test_claim_audit_records_hash(pipeline, stage):
    resp = _claim(pipeline, "U1", stage(pdf_bytes("audited")))
    steps = storage.get_audit_steps(resp.job_id)
    assert [s["step"] for s in steps][:2] == ["claim.created", "claim.queued"]
    assert steps[0]["details"]["owner_id"] == "U1"
