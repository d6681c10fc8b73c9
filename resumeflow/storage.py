from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

import orjson
from sqlalchemy import (
    Column,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased, declarative_base, sessionmaker
import datetime as _dt

from .preview import extract_preview_fields
from .schemas import AuditEvent
from .settings import settings

Base = declarative_base()

PENDING_CLAIM = "pending_claim"
QUEUED = "queued"
PROCESSING = "processing"
WAITING_FOR_CACHE = "waiting_for_cache"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = (COMPLETED, FAILED)
# Statuses a delivered job message may move into processing from
RUNNABLE_STATUSES = (PENDING_CLAIM, QUEUED, PROCESSING)


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _iso_ago(seconds: float) -> str:
    return (_utc_now() - _dt.timedelta(seconds=seconds)).isoformat()


def dump_content(content: Dict[str, Any]) -> str:
    return orjson.dumps(content).decode()


def load_content(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    return orjson.loads(raw)


class Job(Base):
    __tablename__ = "jobs"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PENDING_CLAIM)
    content_hash = Column(String, nullable=True)
    storage_ref = Column(Text, nullable=False)
    extracted_content = Column(Text, nullable=True)
    staged_content = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_type = Column(String, nullable=True)
    user_error = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    external_job_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=True)
    queued_at = Column(String, nullable=True)
    parsed_at = Column(String, nullable=True)

    __table_args__ = (
        Index("jobs_owner_hash_status_idx", "owner_id", "content_hash", "status"),
        Index("jobs_hash_status_idx", "content_hash", "status"),
        Index("jobs_owner_created_idx", "owner_id", "created_at"),
        Index("jobs_external_job_idx", "external_job_id"),
        # At most one processing job per (owner, content)
        Index(
            "jobs_one_processing_per_owner_hash",
            "owner_id",
            "content_hash",
            unique=True,
            sqlite_where=text("status = 'processing'"),
            postgresql_where=text("status = 'processing'"),
        ),
    )


class PublishedArtifact(Base):
    __tablename__ = "published_artifacts"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, unique=True)
    job_id = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    preview_name = Column(String, nullable=True)
    preview_headline = Column(String, nullable=True)
    preview_location = Column(String, nullable=True)
    preview_exp_count = Column(Integer, nullable=True)
    preview_edu_count = Column(Integer, nullable=True)
    preview_skills = Column(Text, nullable=True)
    last_published_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Audit(Base):
    __tablename__ = "audit"
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False)
    step = Column(String, nullable=False)
    status = Column(String, nullable=False)
    ts_iso = Column(String, nullable=False)
    ts_ns = Column(Integer, nullable=False)
    input_digest = Column(String, nullable=True)
    output_digest = Column(String, nullable=True)
    prev_event_hash = Column(String, nullable=False)
    event_hash = Column(String, nullable=False)
    details_json = Column(Text, nullable=False)


engine = None
SessionLocal = None


def configure(url: str) -> None:
    """(Re)bind the module to a database and create tables if missing."""
    global engine, SessionLocal
    kwargs: Dict[str, Any] = {"echo": False, "future": True}
    if url.startswith("sqlite"):
        # Worker threads share the engine; wait on locks instead of failing fast
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(url, **kwargs)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(engine)


configure(settings.database_url())


def _job_dict(row: Job) -> Dict[str, Any]:
    return {
        "id": row.id,
        "owner_id": row.owner_id,
        "status": row.status,
        "content_hash": row.content_hash,
        "storage_ref": row.storage_ref,
        "extracted_content": load_content(row.extracted_content),
        "staged_content": load_content(row.staged_content),
        "last_error": row.last_error,
        "last_error_type": row.last_error_type,
        "user_error": row.user_error,
        "attempt_count": row.attempt_count,
        "retry_count": row.retry_count,
        "external_job_id": row.external_job_id,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "queued_at": row.queued_at,
        "parsed_at": row.parsed_at,
    }


def _artifact_upsert(session, owner_id: str, job_id: str, content: Dict[str, Any], now: str) -> None:
    """Insert-or-update the owner's published artifact in the caller's transaction."""
    preview = extract_preview_fields(content)
    values = {
        "job_id": job_id,
        "content": dump_content(content),
        "preview_name": preview["preview_name"],
        "preview_headline": preview["preview_headline"],
        "preview_location": preview["preview_location"],
        "preview_exp_count": preview["preview_exp_count"],
        "preview_edu_count": preview["preview_edu_count"],
        "preview_skills": preview["preview_skills"],
        "last_published_at": now,
        "updated_at": now,
    }
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        insert_fn = postgresql.insert
    elif dialect == "sqlite":
        insert_fn = sqlite.insert
    else:
        raise RuntimeError(f"Unsupported database dialect for artifact upsert: {dialect}")
    stmt = insert_fn(PublishedArtifact).values(
        id=str(uuid.uuid4()),
        owner_id=owner_id,
        created_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(index_elements=[PublishedArtifact.owner_id], set_=values)
    session.execute(stmt)


# --- Job lifecycle -----------------------------------------------------------

def create_job(owner_id: str, storage_ref: str, content_hash: str) -> Dict[str, Any]:
    job_id = str(uuid.uuid4())
    now = _utc_now_iso()
    with SessionLocal() as session:
        job = Job(
            id=job_id,
            owner_id=owner_id,
            status=PENDING_CLAIM,
            content_hash=content_hash,
            storage_ref=storage_ref,
            attempt_count=0,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        session.commit()
        session.refresh(job)
        return _job_dict(job)


def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        row = session.get(Job, job_id)
        return _job_dict(row) if row else None


def find_recent_claim(owner_id: str, window_s: float) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        stmt = (
            select(Job)
            .where(Job.owner_id == owner_id, Job.created_at >= _iso_ago(window_s))
            .order_by(Job.created_at.desc())
            .limit(1)
        )
        row = session.execute(stmt).scalars().first()
        return _job_dict(row) if row else None


def find_completed(owner_id: str, content_hash: str, exclude_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Cache lookup: a finished extraction of the same bytes for the same owner."""
    with SessionLocal() as session:
        stmt = select(Job).where(
            Job.owner_id == owner_id,
            Job.content_hash == content_hash,
            Job.status == COMPLETED,
            Job.extracted_content.is_not(None),
        )
        if exclude_id:
            stmt = stmt.where(Job.id != exclude_id)
        row = session.execute(stmt.order_by(Job.parsed_at.desc()).limit(1)).scalars().first()
        return _job_dict(row) if row else None


def find_processing(owner_id: str, content_hash: str, exclude_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """In-flight lookup: another job of the same owner currently extracting the same bytes."""
    with SessionLocal() as session:
        stmt = select(Job).where(
            Job.owner_id == owner_id,
            Job.content_hash == content_hash,
            Job.status == PROCESSING,
        )
        if exclude_id:
            stmt = stmt.where(Job.id != exclude_id)
        row = session.execute(stmt.limit(1)).scalars().first()
        return _job_dict(row) if row else None


def find_by_external_job(external_job_id: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        row = session.execute(
            select(Job).where(Job.external_job_id == external_job_id).limit(1)
        ).scalars().first()
        return _job_dict(row) if row else None


def attach_external_job(job_id: str, external_job_id: str) -> None:
    with SessionLocal() as session:
        session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(external_job_id=external_job_id, updated_at=_utc_now_iso())
        )
        session.commit()


def set_storage_ref(job_id: str, storage_ref: str) -> bool:
    """Point a claimed job at its owner-scoped object."""
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.storage_ref != storage_ref)
            .values(storage_ref=storage_ref, updated_at=_utc_now_iso())
        )
        session.commit()
        return result.rowcount > 0


def mark_queued(job_id: str) -> bool:
    """pending_claim -> queued. A consumer may already have picked the job up."""
    now = _utc_now_iso()
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == PENDING_CLAIM)
            .values(status=QUEUED, queued_at=now, updated_at=now)
        )
        session.commit()
        return result.rowcount > 0


def mark_waiting(job_id: str) -> bool:
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(RUNNABLE_STATUSES))
            .values(status=WAITING_FOR_CACHE, staged_content=None, updated_at=_utc_now_iso())
        )
        session.commit()
        return result.rowcount > 0


def mark_failed(
    job_id: str,
    last_error: str,
    user_error: str,
    error_type: Optional[str] = None,
) -> bool:
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status != COMPLETED)
            .values(
                status=FAILED,
                staged_content=None,
                last_error=last_error,
                last_error_type=error_type,
                user_error=user_error,
                updated_at=_utc_now_iso(),
            )
        )
        session.commit()
        return result.rowcount > 0


def record_error(job_id: str, last_error: str, error_type: Optional[str] = None, user_error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"last_error": last_error, "last_error_type": error_type, "updated_at": _utc_now_iso()}
    if user_error is not None:
        values["user_error"] = user_error
    with SessionLocal() as session:
        session.execute(update(Job).where(Job.id == job_id, Job.status != COMPLETED).values(**values))
        session.commit()


def requeue(job_id: str) -> bool:
    """processing -> queued while a transient failure waits for redelivery.

    Staged content survives so the redelivery commits it without extracting.
    """
    now = _utc_now_iso()
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == PROCESSING)
            .values(status=QUEUED, queued_at=now, updated_at=now)
        )
        session.commit()
        return result.rowcount > 0


def increment_attempts(job_id: str) -> int:
    with SessionLocal() as session:
        session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(attempt_count=Job.attempt_count + 1, updated_at=_utc_now_iso())
        )
        session.commit()
        return int(session.execute(select(Job.attempt_count).where(Job.id == job_id)).scalar_one())


def begin_processing(job_id: str, owner_id: str, content_hash: str) -> bool:
    """Move a job into processing unless another job already holds (owner, hash).

    Returns False when this job lost the race and must not run extraction.
    """
    other = aliased(Job)
    busy = (
        select(other.id)
        .where(
            other.owner_id == owner_id,
            other.content_hash == content_hash,
            other.status == PROCESSING,
            other.id != job_id,
        )
        .exists()
    )
    with SessionLocal() as session:
        try:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(RUNNABLE_STATUSES), ~busy)
                .values(status=PROCESSING, updated_at=_utc_now_iso())
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except IntegrityError:
            # Partial unique index caught a concurrent winner
            session.rollback()
            return False
        return result.rowcount > 0


def stage_content(job_id: str, content: Dict[str, Any]) -> None:
    with SessionLocal() as session:
        session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == PROCESSING)
            .values(staged_content=dump_content(content), updated_at=_utc_now_iso())
        )
        session.commit()


def commit_content(job_id: str, content: Dict[str, Any]) -> bool:
    """Complete a job and publish its content for the owner in one transaction.

    Returns False when the job was already completed (nothing written).
    """
    now = _utc_now_iso()
    with SessionLocal() as session:
        row = session.get(Job, job_id)
        if row is None:
            raise LookupError(f"job not found: {job_id}")
        if row.status == COMPLETED and row.extracted_content is not None:
            return False
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status != COMPLETED)
            .values(
                status=COMPLETED,
                extracted_content=dump_content(content),
                staged_content=None,
                last_error=None,
                last_error_type=None,
                user_error=None,
                parsed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            return False
        _artifact_upsert(session, row.owner_id, job_id, content, now)
        session.commit()
        return True


def fan_out(content_hash: str, content: Dict[str, Any], source_job_id: Optional[str] = None) -> List[Tuple[str, str]]:
    """Complete every job waiting on content_hash with the given content.

    All waiting jobs and their owners' artifacts are written in a single
    transaction. Returns [(job_id, owner_id)] of the jobs that were resolved.
    """
    now = _utc_now_iso()
    with SessionLocal() as session:
        stmt = select(Job.id, Job.owner_id).where(
            Job.content_hash == content_hash,
            Job.status == WAITING_FOR_CACHE,
        )
        if source_job_id:
            stmt = stmt.where(Job.id != source_job_id)
        waiting = [(r.id, r.owner_id) for r in session.execute(stmt.order_by(Job.created_at.asc()))]
        if not waiting:
            return []
        session.execute(
            update(Job)
            .where(
                Job.id.in_([job_id for job_id, _ in waiting]),
                Job.status == WAITING_FOR_CACHE,
            )
            .values(
                status=COMPLETED,
                extracted_content=dump_content(content),
                staged_content=None,
                last_error=None,
                last_error_type=None,
                user_error=None,
                parsed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        # Latest waiting job per owner becomes that owner's published source
        latest_by_owner: Dict[str, str] = {}
        for job_id, owner_id in waiting:
            latest_by_owner[owner_id] = job_id
        for owner_id, job_id in latest_by_owner.items():
            _artifact_upsert(session, owner_id, job_id, content, now)
        session.commit()
        return waiting


def retry_job(job_id: str) -> bool:
    """failed -> queued for an explicit user retry."""
    now = _utc_now_iso()
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == FAILED)
            .values(
                status=QUEUED,
                user_error=None,
                retry_count=Job.retry_count + 1,
                queued_at=now,
                updated_at=now,
            )
        )
        session.commit()
        return result.rowcount > 0


# --- Maintenance queries -----------------------------------------------------

def find_orphaned(older_than_s: float, max_attempts: int, limit: int = 10) -> List[Dict[str, Any]]:
    with SessionLocal() as session:
        stmt = (
            select(Job)
            .where(
                Job.status == PENDING_CLAIM,
                Job.storage_ref.is_not(None),
                Job.content_hash.is_not(None),
                Job.created_at < _iso_ago(older_than_s),
                Job.attempt_count < max_attempts,
            )
            .order_by(Job.created_at.asc())
            .limit(limit)
        )
        return [_job_dict(r) for r in session.execute(stmt).scalars().all()]


def mark_recovered(job_ids: List[str]) -> int:
    if not job_ids:
        return 0
    now = _utc_now_iso()
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id.in_(job_ids), Job.status == PENDING_CLAIM)
            .values(status=QUEUED, queued_at=now, updated_at=now)
        )
        session.commit()
        return result.rowcount


def waiting_hashes_with_cache() -> List[Tuple[str, str]]:
    """[(content_hash, completed_job_id)] for hashes that have waiting jobs and a finished result."""
    done = aliased(Job)
    with SessionLocal() as session:
        stmt = (
            select(Job.content_hash, func.max(done.id))
            .join(
                done,
                (done.content_hash == Job.content_hash)
                & (done.status == COMPLETED)
                & done.extracted_content.is_not(None),
            )
            .where(Job.status == WAITING_FOR_CACHE)
            .group_by(Job.content_hash)
        )
        return [(h, j) for h, j in session.execute(stmt).all()]


def find_stranded_waiting(older_than_s: float, limit: int = 10) -> List[Dict[str, Any]]:
    """Waiting jobs whose in-flight job is gone without leaving a result."""
    other = aliased(Job)
    in_flight = (
        select(other.id)
        .where(
            other.owner_id == Job.owner_id,
            other.content_hash == Job.content_hash,
            other.status.in_((PENDING_CLAIM, QUEUED, PROCESSING)),
        )
        .exists()
    )
    done = aliased(Job)
    finished = (
        select(done.id)
        .where(
            done.content_hash == Job.content_hash,
            done.status == COMPLETED,
            done.extracted_content.is_not(None),
        )
        .exists()
    )
    with SessionLocal() as session:
        stmt = (
            select(Job)
            .where(
                Job.status == WAITING_FOR_CACHE,
                Job.updated_at < _iso_ago(older_than_s),
                ~in_flight,
                ~finished,
            )
            .order_by(Job.created_at.asc())
            .limit(limit)
        )
        return [_job_dict(r) for r in session.execute(stmt).scalars().all()]


def requeue_waiting(job_ids: List[str]) -> int:
    if not job_ids:
        return 0
    now = _utc_now_iso()
    with SessionLocal() as session:
        result = session.execute(
            update(Job)
            .where(Job.id.in_(job_ids), Job.status == WAITING_FOR_CACHE)
            .values(status=QUEUED, queued_at=now, updated_at=now)
        )
        session.commit()
        return result.rowcount


def list_jobs(owner_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
    with SessionLocal() as session:
        stmt = select(Job)
        if owner_id:
            stmt = stmt.where(Job.owner_id == owner_id)
        if status:
            stmt = stmt.where(Job.status == status)
        return [_job_dict(r) for r in session.execute(stmt.order_by(Job.created_at.asc())).scalars().all()]


# --- Published artifacts -----------------------------------------------------

def get_artifact(owner_id: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        row = session.execute(
            select(PublishedArtifact).where(PublishedArtifact.owner_id == owner_id)
        ).scalars().first()
        if not row:
            return None
        return {
            "owner_id": row.owner_id,
            "job_id": row.job_id,
            "content": load_content(row.content),
            "preview_name": row.preview_name,
            "preview_headline": row.preview_headline,
            "preview_location": row.preview_location,
            "preview_exp_count": row.preview_exp_count,
            "preview_edu_count": row.preview_edu_count,
            "preview_skills": orjson.loads(row.preview_skills) if row.preview_skills else [],
            "last_published_at": row.last_published_at,
        }


def count_artifacts(owner_id: Optional[str] = None) -> int:
    with SessionLocal() as session:
        stmt = select(func.count()).select_from(PublishedArtifact)
        if owner_id:
            stmt = stmt.where(PublishedArtifact.owner_id == owner_id)
        return int(session.execute(stmt).scalar_one())


# --- Audit trail -------------------------------------------------------------

def append_audit(event: AuditEvent) -> None:
    with SessionLocal() as session:
        session.add(
            Audit(
                job_id=event.job_id,
                step=event.step,
                status=event.status,
                ts_iso=event.ts_iso,
                ts_ns=event.ts_ns,
                input_digest=event.input_digest,
                output_digest=event.output_digest,
                prev_event_hash=event.prev_event_hash,
                event_hash=event.event_hash,
                details_json=orjson.dumps(event.details, option=orjson.OPT_SORT_KEYS).decode(),
            )
        )
        session.commit()


def get_last_audit_hash(job_id: str) -> Optional[str]:
    with SessionLocal() as session:
        stmt = select(Audit).where(Audit.job_id == job_id).order_by(Audit.id.desc()).limit(1)
        row = session.execute(stmt).scalars().first()
        return row.event_hash if row else None


def get_audit_steps(job_id: str) -> List[Dict[str, Any]]:
    with SessionLocal() as session:
        stmt = select(Audit).where(Audit.job_id == job_id).order_by(Audit.id.asc())
        rows = session.execute(stmt).scalars().all()
        return [
            {"step": r.step, "status": r.status, "details": orjson.loads(r.details_json)}
            for r in rows
        ]


def get_audit_events(job_id: str) -> List[Dict[str, Any]]:
    """Full audit rows in append order, shaped like AuditEvent."""
    with SessionLocal() as session:
        stmt = select(Audit).where(Audit.job_id == job_id).order_by(Audit.id.asc())
        return [
            {
                "job_id": r.job_id,
                "step": r.step,
                "status": r.status,
                "ts_iso": r.ts_iso,
                "ts_ns": r.ts_ns,
                "input_digest": r.input_digest,
                "output_digest": r.output_digest,
                "details": orjson.loads(r.details_json),
                "prev_event_hash": r.prev_event_hash,
                "event_hash": r.event_hash,
            }
            for r in session.execute(stmt).scalars().all()
        ]
