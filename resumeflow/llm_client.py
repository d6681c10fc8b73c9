from __future__ import annotations

import os
import threading
from typing import Any, Dict, List, Optional

import orjson
import requests
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .hashing import sha256_bytes
from .normalize import sanitize_service_error
from .settings import settings


class CapabilityError(Exception):
    """The extraction provider failed (transport, HTTP status, timeout)."""


class NoObjectGenerated(CapabilityError):
    """The provider answered but the answer is not a conforming object; ``text`` keeps the raw answer."""

    def __init__(self, message: str, text: str = "") -> None:
        super().__init__(message)
        self.text = text


class Generation(BaseModel):
    obj: Optional[Dict[str, Any]] = None
    text: str = ""


class _LLMConfig(BaseModel):
    provider: str
    model_primary: str
    base_url: str = "https://openrouter.ai/api/v1"
    temperature: float = 0.0
    top_p: float = 0.95
    max_tokens: int = 8000
    request_timeout_s: int = 90
    enabled: bool = True


def _openrouter_headers() -> Dict[str, str]:
    key = os.getenv("OPENROUTER_API_KEY")
    if not key:
        raise CapabilityError("Extraction capability not configured: missing OPENROUTER_API_KEY")
    return {
        "Authorization": f"Bearer {key}",
        "Content-Type": "application/json",
    }


@retry(
    reraise=True,
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(requests.ConnectionError),
)
def _post_chat(url: str, payload: Dict[str, Any], timeout: float) -> requests.Response:
    return requests.post(url, headers=_openrouter_headers(), data=orjson.dumps(payload), timeout=timeout)


class OpenRouterCapability:
    """Chat-completions client used as the extraction capability."""

    def __init__(self, cfg: _LLMConfig) -> None:
        self.cfg = cfg

    def generate(
        self,
        system: str,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Generation:
        if not self.cfg.enabled:
            raise CapabilityError("Extraction capability not available: llm.enabled is false")
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        payload: Dict[str, Any] = {
            "model": self.cfg.model_primary,
            "messages": messages,
            "temperature": self.cfg.temperature,
            "top_p": self.cfg.top_p,
            "max_tokens": self.cfg.max_tokens,
        }
        if schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "resume", "schema": schema},
            }
        timeout = timeout_s or self.cfg.request_timeout_s
        url = self.cfg.base_url.rstrip("/") + "/chat/completions"
        try:
            resp = _post_chat(url, payload, timeout)
        except requests.Timeout as e:
            raise CapabilityError(f"Extraction request timed out after {timeout}s") from e
        except requests.RequestException as e:
            raise CapabilityError(f"Extraction request failed: {type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            raise CapabilityError(
                f"Extraction service error {resp.status_code}: {sanitize_service_error(resp.text, resp.status_code)}"
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise CapabilityError(
                f"Extraction service error: {sanitize_service_error(resp.text, resp.status_code)}"
            ) from e
        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        if schema is None:
            return Generation(obj=None, text=content)
        try:
            obj = orjson.loads(content)
        except orjson.JSONDecodeError:
            raise NoObjectGenerated("No object generated: response did not match schema", text=content)
        if not isinstance(obj, dict):
            raise NoObjectGenerated("No object generated: response is not an object", text=content)
        return Generation(obj=obj, text=content)


def build_capability(llm_cfg: Dict[str, Any]) -> OpenRouterCapability:
    cfg = _LLMConfig(**llm_cfg)
    if cfg.provider != "openrouter":
        raise ValueError(f"Unsupported llm provider: {cfg.provider}")
    return OpenRouterCapability(cfg)


_capability: Any = None
_capability_lock = threading.Lock()


def get_capability():
    global _capability
    with _capability_lock:
        if _capability is None:
            _capability = build_capability(settings.llm)
        return _capability


def set_capability(capability: Any) -> None:
    """Install the process-wide capability (startup wiring, tests). ``None`` resets it."""
    global _capability
    with _capability_lock:
        _capability = capability


def redact_hashes(prompt: str, response: str) -> Dict[str, Any]:
    return {
        "prompt_sha256": sha256_bytes(prompt.encode("utf-8")),
        "response_sha256": sha256_bytes(response.encode("utf-8")),
        "prompt_len": len(prompt),
        "response_len": len(response),
    }
