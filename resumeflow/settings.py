from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import orjson
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_CONFIG_PATH = _PROJECT_ROOT / "config" / "config.json"


def _config_path() -> Path:
    override = os.getenv("RESUMEFLOW_CONFIG")
    return Path(override) if override else _DEFAULT_CONFIG_PATH


class _ArtifactsCfg(BaseModel):
    base_dir: str
    keep_audit_jsonl: bool = True


class _RetriesCfg(BaseModel):
    queue_max_retries: int = 3
    manual_max_retries: int = 2
    total_max_attempts: int = 6


class _LLMCfg(BaseModel):
    provider: str
    model_primary: str
    temperature: float
    top_p: float
    max_tokens: int
    request_timeout_s: int


class _DatabaseCfg(BaseModel):
    url: str


class _RawConfig(BaseModel):
    artifacts: _ArtifactsCfg
    retries: _RetriesCfg
    llm: _LLMCfg
    database: _DatabaseCfg
    storage: Optional[Dict[str, Any]] = None
    claim: Optional[Dict[str, Any]] = None
    queue: Optional[Dict[str, Any]] = None
    notify: Optional[Dict[str, Any]] = None
    alerts: Optional[Dict[str, Any]] = None


class Settings(BaseModel):
    artifacts_base_dir: str = Field(..., description="Base directory for per-job audit logs")
    artifacts: Dict[str, Any]
    retries: Dict[str, Any]
    llm: Dict[str, Any]
    database: Dict[str, Any]
    storage: Dict[str, Any]
    claim: Dict[str, Any]
    queue: Dict[str, Any]
    notify: Dict[str, Any]
    alerts: Dict[str, Any]

    @classmethod
    def load(cls) -> "Settings":
        # Load environment variables
        load_dotenv(dotenv_path=_PROJECT_ROOT / ".env", override=False)

        config_path = _config_path()
        try:
            raw_bytes = config_path.read_bytes()
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Missing config file at {config_path}") from e
        try:
            raw_obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file: {config_path}") from e
        try:
            validated = _RawConfig.model_validate(raw_obj)
        except ValidationError as e:
            raise ValueError(f"Invalid config structure: {e}") from e

        # LLM keys outside the validated core are passed through as-is
        llm_cfg = {
            "base_url": "https://openrouter.ai/api/v1",
            "max_chars": 60000,
            "window_head_chars": 12000,
            "window_tail_chars": 6000,
            "enabled": True,
        }
        llm_cfg.update(raw_obj.get("llm", {}))
        llm_cfg.update(validated.llm.model_dump())

        storage_cfg = {
            "backend": "local",
            "base_dir": "objects",
            "bucket": "",
            "region": "auto",
            "endpoint_url": "",
            "staging_prefix": "temp/",
            "owner_prefix": "users/",
        }
        if validated.storage:
            storage_cfg.update(validated.storage)

        claim_cfg = {
            "max_file_bytes": 10 * 1024 * 1024,
            "recent_claim_window_s": 120,
        }
        if validated.claim:
            claim_cfg.update(validated.claim)

        queue_cfg = {
            "workers": 2,
        }
        if validated.queue:
            queue_cfg.update(validated.queue)

        notify_cfg = {
            "status_url": "",
            "cache_invalidate_url": "",
            "timeout_s": 5,
        }
        if validated.notify:
            notify_cfg.update(validated.notify)

        alerts_cfg = {
            "channel": "log",
            "webhook_url": "",
        }
        if validated.alerts:
            alerts_cfg.update(validated.alerts)

        # Environment wins for secrets and deployment-specific endpoints
        if os.getenv("RESUMEFLOW_DATABASE_URL"):
            validated.database.url = os.environ["RESUMEFLOW_DATABASE_URL"]
        if os.getenv("RESUMEFLOW_ALERT_WEBHOOK_URL"):
            alerts_cfg["webhook_url"] = os.environ["RESUMEFLOW_ALERT_WEBHOOK_URL"]

        settings = cls(
            artifacts_base_dir=validated.artifacts.base_dir,
            artifacts=validated.artifacts.model_dump(),
            retries=validated.retries.model_dump(),
            llm=llm_cfg,
            database=validated.database.model_dump(),
            storage=storage_cfg,
            claim=claim_cfg,
            queue=queue_cfg,
            notify=notify_cfg,
            alerts=alerts_cfg,
        )
        return settings

    @property
    def cfg_hash(self) -> str:
        from hashlib import sha256

        # Canonicalize raw config JSON (not the flattened Settings)
        try:
            raw_bytes = _config_path().read_bytes()
        except FileNotFoundError:
            raw_bytes = b"{}"
        try:
            obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError:
            obj = {}
        canonical = orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)
        return sha256(canonical).hexdigest()

    def resolve_path(self, value: str) -> Path:
        p = Path(value)
        if not p.is_absolute():
            p = _PROJECT_ROOT / p
        return p

    def database_url(self) -> str:
        url = self.database["url"]
        # Relative sqlite paths are anchored at the project root
        prefix = "sqlite:///"
        if url.startswith(prefix) and not url.startswith(prefix + "/") and url != prefix:
            return prefix + str(self.resolve_path(url[len(prefix):]))
        return url

    def artifacts_dir_for(self, job_id: str) -> Path:
        base = self.resolve_path(self.artifacts_base_dir)
        job_dir = base / job_id
        # Ensure directories exist
        job_dir.mkdir(parents=True, exist_ok=True)
        return job_dir

    def internal_token(self) -> Optional[str]:
        return os.getenv("RESUMEFLOW_INTERNAL_TOKEN")


# Singleton settings instance for convenience
settings = Settings.load()
