from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .settings import settings

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def is_staging_ref(ref: str, prefix: Optional[str] = None) -> bool:
    prefix = prefix or settings.storage.get("staging_prefix", "temp/")
    if not ref or not ref.startswith(prefix):
        return False
    rest = ref[len(prefix):]
    # No traversal out of the staging namespace
    return bool(rest) and ".." not in rest.split("/")


def owner_ref(owner_id: str, filename: str, now_ms: Optional[int] = None, prefix: Optional[str] = None) -> str:
    """users/<owner>/<epoch ms>/<filename>"""
    prefix = prefix or settings.storage.get("owner_prefix", "users/")
    ts = now_ms if now_ms is not None else int(time.time() * 1000)
    name = _UNSAFE_NAME_RE.sub("_", filename.rsplit("/", 1)[-1]) or "document.pdf"
    return f"{prefix}{owner_id}/{ts}/{name}"


class LocalObjectStore:
    """Object storage on the local filesystem, keyed by relative ref."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, ref: str) -> Path:
        p = (self.base_dir / ref).resolve()
        if self.base_dir.resolve() not in p.parents:
            raise ValueError(f"ref escapes object store: {ref}")
        return p

    def get(self, ref: str) -> Optional[bytes]:
        p = self._path(ref)
        if not p.is_file():
            return None
        return p.read_bytes()

    def put(self, ref: str, data: bytes, content_type: str = "application/pdf") -> None:
        p = self._path(ref)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(p.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(p)

    def delete(self, ref: str) -> None:
        p = self._path(ref)
        try:
            p.unlink()
        except FileNotFoundError:
            return


class S3ObjectStore:
    """S3-compatible bucket (AWS, R2, MinIO) via boto3."""

    def __init__(self, bucket: str, region: str = "auto", endpoint_url: Optional[str] = None, client: Any = None) -> None:
        self.bucket = bucket
        if client is None:
            import boto3

            kwargs: Dict[str, Any] = {"region_name": region}
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("s3", **kwargs)
        self.client = client

    def get(self, ref: str) -> Optional[bytes]:
        from botocore.exceptions import ClientError

        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=ref)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404", "NotFound"):
                return None
            raise
        return resp["Body"].read()

    def put(self, ref: str, data: bytes, content_type: str = "application/pdf") -> None:
        self.client.put_object(Bucket=self.bucket, Key=ref, Body=data, ContentType=content_type)

    def delete(self, ref: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=ref)


def delete_best_effort(store: Any, ref: str) -> bool:
    try:
        store.delete(ref)
        return True
    except Exception as e:
        # Staging lifecycle policy removes leftovers
        logger.warning("object delete failed ref=%s err=%s:%s", ref, type(e).__name__, e)
        return False


def make_object_store(cfg: Optional[Dict[str, Any]] = None):
    cfg = cfg or settings.storage
    backend = cfg.get("backend", "local")
    if backend == "local":
        return LocalObjectStore(settings.resolve_path(cfg.get("base_dir", "objects")))
    if backend == "s3":
        if not cfg.get("bucket"):
            raise ValueError("storage.bucket is required for the s3 backend")
        return S3ObjectStore(
            bucket=cfg["bucket"],
            region=cfg.get("region", "auto"),
            endpoint_url=cfg.get("endpoint_url") or None,
        )
    raise ValueError(f"Unknown storage backend: {backend}")
