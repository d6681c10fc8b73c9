from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
import pytest

from resumeflow import storage
from resumeflow.llm_client import Generation, NoObjectGenerated, set_capability
from resumeflow.objectstore import LocalObjectStore
from resumeflow.service import build_pipeline
from resumeflow.settings import settings


RESUME = {
    "full_name": "Ada Lovelace",
    "headline": "Software Engineer",
    "summary": "Engineer who ships analytical engines.",
    "contact": {"email": "ada@example.com", "location": "London"},
    "experience": [
        {"title": "Engineer", "company": "Analytical Co", "start_date": "1842", "end_date": "1843",
         "description": "Wrote the first program."},
    ],
    "education": [{"degree": "Mathematics", "institution": "Private tutoring"}],
    "skills": [{"category": "Languages", "items": ["Python", "SQL", "Rust", "Go", "C"]}],
}


class FakeCapability:
    """Scripted extraction capability.

    Each script entry is a dict (a conforming object), a str (raw text; in
    schema mode it becomes NoObjectGenerated) or an exception to raise.
    When the script runs out the last entry repeats.
    """

    def __init__(self, *script: Any) -> None:
        self.script: List[Any] = list(script) or [RESUME]
        self.calls: List[Dict[str, Any]] = []

    def generate(self, system: str, prompt: str, schema: Optional[Dict[str, Any]] = None, timeout_s: Optional[float] = None) -> Generation:
        self.calls.append({"prompt": prompt, "schema": schema is not None})
        entry = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, dict):
            return Generation(obj=entry if schema is not None else None, text=orjson.dumps(entry).decode())
        if schema is not None:
            raise NoObjectGenerated("No object generated: response did not match schema", text=entry)
        return Generation(text=entry)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.statuses: List[tuple] = []
        self.invalidated: List[str] = []

    def notify(self, job_id: str, status: str, error: Optional[str] = None) -> None:
        if self.fail:
            raise ConnectionError("observer unreachable")
        self.statuses.append((job_id, status, error))

    def invalidate_cache(self, owner_id: str) -> None:
        if self.fail:
            raise ConnectionError("observer unreachable")
        self.invalidated.append(owner_id)

    def for_job(self, job_id: str) -> List[str]:
        return [s for j, s, _ in self.statuses if j == job_id]


def pdf_bytes(label: str) -> bytes:
    return b"%PDF-1.4 " + label.encode("utf-8")


def plain_text(data: bytes) -> str:
    return data.decode("latin-1")


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(settings, "artifacts_base_dir", str(tmp_path / "artifacts"))
    db_url = f"sqlite:///{tmp_path / 'resumeflow.db'}"
    monkeypatch.setitem(settings.database, "url", db_url)
    storage.configure(db_url)
    set_capability(None)
    yield
    set_capability(None)


@pytest.fixture
def object_store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def capability() -> FakeCapability:
    return FakeCapability()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def pipeline(object_store, capability, notifier):
    return build_pipeline(
        settings,
        object_store=object_store,
        capability=capability,
        notifier=notifier,
        text_extractor=plain_text,
    )


@pytest.fixture
def stage(object_store):
    """Put bytes under the staging prefix and return the staging ref."""

    def _stage(data: bytes, name: str = "resume.pdf") -> str:
        ref = f"temp/{uuid.uuid4().hex}/{name}"
        object_store.put(ref, data)
        return ref

    return _stage
