from __future__ import annotations

import functools
from pathlib import Path

import orjson

from resumeflow import cli_ingest, cli_maintenance, cli_retry, storage
from resumeflow.service import build_pipeline

from conftest import FakeCapability, RecordingNotifier, plain_text


def _patch_pipeline(monkeypatch, object_store, capability):
    factory = functools.partial(
        build_pipeline,
        object_store=object_store,
        capability=capability,
        notifier=RecordingNotifier(),
        text_extractor=plain_text,
    )
    for module in (cli_ingest, cli_retry, cli_maintenance):
        monkeypatch.setattr(module, "build_pipeline", factory)


def test_ingest_cli_claims_and_processes(tmp_path: Path, monkeypatch, object_store, capsys):
    _patch_pipeline(monkeypatch, object_store, FakeCapability())
    resume = tmp_path / "resume.pdf"
    resume.write_bytes(b"%PDF-1.4 Ada Lovelace")

    assert cli_ingest.main(["--file", str(resume), "--owner", "U1"]) == 0
    summary = orjson.loads(capsys.readouterr().out)
    assert summary["status"] == "completed"
    assert summary["claim_status"] == "queued"
    assert summary["artifact"] is True
    assert storage.get_job(summary["job_id"])["storage_ref"].startswith("users/U1/")


def test_ingest_cli_reports_claim_errors(tmp_path: Path, monkeypatch, object_store, capsys):
    _patch_pipeline(monkeypatch, object_store, FakeCapability())
    not_pdf = tmp_path / "resume.pdf"
    not_pdf.write_bytes(b"just text")

    assert cli_ingest.main(["--file", str(not_pdf), "--owner", "U1"]) == 1
    assert orjson.loads(capsys.readouterr().out)["error"] == "invalid_format"


def test_retry_cli(tmp_path: Path, monkeypatch, object_store, capsys):
    _patch_pipeline(monkeypatch, object_store, FakeCapability())
    job = storage.create_job("U1", "users/U1/1/a.pdf", "a" * 64)
    storage.mark_failed(job["id"], "boom", "msg", "unknown")
    object_store.put("users/U1/1/a.pdf", b"%PDF-1.4 again")

    assert cli_retry.main(["--owner", "U1", "--job", job["id"]]) == 0
    assert orjson.loads(capsys.readouterr().out)["status"] == "completed"

    assert cli_retry.main(["--owner", "U2", "--job", job["id"]]) == 1
    assert orjson.loads(capsys.readouterr().out)["error"] == "forbidden"


def test_maintenance_cli_runs_all_sweeps(monkeypatch, object_store, capsys):
    _patch_pipeline(monkeypatch, object_store, FakeCapability())
    assert cli_maintenance.main(["all", "--no-drain"]) == 0
    summary = orjson.loads(capsys.readouterr().out)
    assert set(summary) == {"recover", "resolve", "release"}
    assert summary["recover"]["found"] == 0
