from __future__ import annotations

import re
from typing import Literal, Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator


JobStatus = Literal["pending_claim", "queued", "processing", "waiting_for_cache", "completed", "failed"]


class AuditEvent(BaseModel):
    job_id: str
    step: str
    status: Literal["ok", "error"]
    ts_iso: str  # UTC ISO 8601
    ts_ns: int   # monotonic clock nanoseconds
    input_digest: Optional[str] = None
    output_digest: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_event_hash: str
    event_hash: str


class JobMessage(BaseModel):
    type: Literal["parse"] = "parse"
    job_id: str
    owner_id: str
    storage_ref: str
    content_hash: str
    attempt: int = 1


class DeadLetterMessage(BaseModel):
    original_message: JobMessage
    failure_reason: str
    failed_at: str
    attempts: int


class ClaimRequest(BaseModel):
    staging_ref: str
    referral_token: Optional[str] = None


class ClaimResponse(BaseModel):
    job_id: str
    status: JobStatus
    cached: bool = False
    waiting_for_cache: bool = False
    already_claimed: bool = False


class ProviderCallback(BaseModel):
    external_job_id: str
    status: str
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# --- Extracted resume content -------------------------------------------------

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URL_RE = re.compile(r"^(https?://|mailto:)", re.I)


def _check_url(v: Optional[str]) -> Optional[str]:
    if v and not _URL_RE.match(v):
        raise ValueError("must be an http(s) URL")
    return v


class Contact(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    linkedin: Optional[str] = None
    github: Optional[str] = None
    website: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, v: Optional[str]) -> Optional[str]:
        if v and not _EMAIL_RE.match(v):
            raise ValueError("Invalid email")
        return v

    @field_validator("linkedin", "github", "website")
    @classmethod
    def _urls(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v)


class Experience(BaseModel):
    title: str = Field(..., min_length=1)
    company: str = Field(..., min_length=1)
    location: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    description: str = ""
    highlights: List[str] = Field(default_factory=list)


class Education(BaseModel):
    degree: str = Field(..., min_length=1)
    institution: Optional[str] = None
    location: Optional[str] = None
    graduation_date: Optional[str] = None
    gpa: Optional[str] = None


class SkillGroup(BaseModel):
    category: str = Field(..., min_length=1)
    items: List[str] = Field(..., min_length=1)


class Certification(BaseModel):
    name: str = Field(..., min_length=1)
    issuer: Optional[str] = None
    date: Optional[str] = None
    url: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v)


class Project(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    year: Optional[str] = None
    technologies: List[str] = Field(default_factory=list)
    url: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v)


class ResumeContent(BaseModel):
    full_name: str = Field(..., min_length=1)
    headline: str = ""
    summary: str = ""
    contact: Contact = Field(default_factory=Contact)
    experience: List[Experience] = Field(default_factory=list)
    education: List[Education] = Field(default_factory=list)
    skills: List[SkillGroup] = Field(default_factory=list)
    certifications: List[Certification] = Field(default_factory=list)
    projects: List[Project] = Field(default_factory=list)


def validation_messages(exc) -> List[str]:
    """Flatten a pydantic ValidationError into 'path: message' strings."""
    out: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{loc}: {err.get('msg', 'invalid')}")
    return out
