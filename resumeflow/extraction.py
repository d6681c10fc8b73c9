from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from . import documents, prompts
from .llm_client import CapabilityError, NoObjectGenerated, get_capability, redact_hashes
from .normalize import normalize_resume, parse_json_candidate
from .schemas import ResumeContent
from .settings import settings

logger = logging.getLogger(__name__)

RAW_RESPONSE_LIMIT = 500


class ExtractionOutcome(BaseModel):
    ok: bool
    content: Optional[Dict[str, Any]] = None
    strategy: Optional[str] = None
    repaired: bool = False
    error: Optional[str] = None
    raw_response: Optional[str] = None


class ExtractionAdapter:
    """Turns document bytes into a normalized resume dict.

    Strategies run in order and the first success wins:

    - ``schema``: the capability is asked to conform to the resume JSON schema.
    - ``salvage``: only when ``schema`` returned text without a conforming
      object; the JSON is located in that text, repaired and remapped.
    - ``freeform``: no schema, a prompt with a full example object.
    - ``freeform_truncated``: head+tail window of the text and a
      single-object instruction, when ``freeform`` did not parse.

    ``retry_with_feedback`` is not part of the cascade; callers use it after
    their own validation rejected a result. No method raises: failures come
    back as ``ExtractionOutcome(ok=False)``.
    """

    def __init__(
        self,
        capability: Any = None,
        audit: Any = None,
        text_extractor: Callable[[bytes], str] = documents.extract_text,
        llm_cfg: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._capability = capability
        self.audit = audit
        self.text_extractor = text_extractor
        cfg = llm_cfg or settings.llm
        self.timeout_s = float(cfg.get("request_timeout_s", 90))
        self.max_chars = int(cfg.get("max_chars", 60000))
        self.head_chars = int(cfg.get("window_head_chars", 12000))
        self.tail_chars = int(cfg.get("window_tail_chars", 6000))
        self._schema = ResumeContent.model_json_schema()

    @property
    def capability(self):
        return self._capability if self._capability is not None else get_capability()

    def _log_attempt(
        self,
        job_id: Optional[str],
        strategy: str,
        started: float,
        ok: bool,
        repaired: bool,
        prompt: str,
        response: str,
        error: Optional[str] = None,
    ) -> None:
        duration_ms = int((time.perf_counter() - started) * 1000)
        details: Dict[str, Any] = {
            "strategy": strategy,
            "duration_ms": duration_ms,
            "ok": ok,
            "repaired": repaired,
            **redact_hashes(prompt, response),
        }
        if error:
            details["error"] = error[:200]
        logger.info(
            "extract attempt job_id=%s strategy=%s ok=%s repaired=%s duration_ms=%d",
            job_id, strategy, ok, repaired, duration_ms,
        )
        if self.audit is not None and job_id:
            try:
                self.audit.log_event(job_id, "extract.attempt", "ok" if ok else "error", details)
            except Exception:
                logger.exception("audit write failed job_id=%s step=extract.attempt", job_id)

    def _parse(self, text: str) -> Tuple[Dict[str, Any], bool]:
        obj, repaired = parse_json_candidate(text)
        return normalize_resume(obj), repaired

    def _fail(self, error: str, raw: str) -> ExtractionOutcome:
        return ExtractionOutcome(ok=False, error=error, raw_response=(raw or "")[:RAW_RESPONSE_LIMIT] or None)

    def extract_text(self, data: bytes) -> str:
        text = self.text_extractor(data)
        text = (text or "")[: self.max_chars]
        if not text.strip():
            raise ValueError("Extracted resume text is empty")
        return text

    def extract(self, data: bytes, job_id: Optional[str] = None) -> ExtractionOutcome:
        try:
            text = self.extract_text(data)
        except Exception as e:
            logger.info("text extraction failed job_id=%s err=%s", job_id, e)
            return self._fail(str(e), "")
        return self.extract_from_text(text, job_id=job_id)

    def extract_from_text(self, text: str, job_id: Optional[str] = None) -> ExtractionOutcome:
        last_raw = ""
        last_error = "AI parsing failed"
        try:
            cap = self.capability
        except Exception as e:
            return self._fail(f"Extraction capability not available: {e}", "")

        # schema
        prompt = prompts.build_schema_prompt(text)
        started = time.perf_counter()
        salvage_text: Optional[str] = None
        try:
            gen = cap.generate(prompts.SYSTEM_PROMPT, prompt, schema=self._schema, timeout_s=self.timeout_s)
            if gen.obj is None:
                raise NoObjectGenerated("No object generated", text=gen.text)
            content = normalize_resume(gen.obj)
            self._log_attempt(job_id, "schema", started, True, False, prompt, gen.text)
            return ExtractionOutcome(ok=True, content=content, strategy="schema")
        except NoObjectGenerated as e:
            last_raw, last_error = e.text, str(e)
            salvage_text = e.text or None
            self._log_attempt(job_id, "schema", started, False, False, prompt, e.text, str(e))
        except Exception as e:
            last_error = str(e)
            self._log_attempt(job_id, "schema", started, False, False, prompt, "", str(e))

        # salvage
        if salvage_text:
            started = time.perf_counter()
            try:
                content, repaired = self._parse(salvage_text)
                self._log_attempt(job_id, "salvage", started, True, repaired, prompt, salvage_text)
                return ExtractionOutcome(ok=True, content=content, strategy="salvage", repaired=repaired)
            except ValueError as e:
                last_error = str(e)
                self._log_attempt(job_id, "salvage", started, False, False, prompt, salvage_text, str(e))

        # freeform, then freeform on a head+tail window
        window = documents.head_tail_window(text, self.head_chars, self.tail_chars)
        attempts = [
            ("freeform", prompts.build_freeform_prompt(text)),
            ("freeform_truncated", prompts.build_truncated_prompt(window)),
        ]
        for strategy, prompt in attempts:
            started = time.perf_counter()
            raw = ""
            try:
                gen = cap.generate(prompts.SYSTEM_PROMPT, prompt, schema=None, timeout_s=self.timeout_s)
                raw = gen.text or ""
                content, repaired = self._parse(raw)
                self._log_attempt(job_id, strategy, started, True, repaired, prompt, raw)
                return ExtractionOutcome(ok=True, content=content, strategy=strategy, repaired=repaired)
            except (CapabilityError, ValueError) as e:
                last_error = str(e)
                if raw:
                    last_raw = raw
                self._log_attempt(job_id, strategy, started, False, False, prompt, raw, str(e))
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                self._log_attempt(job_id, strategy, started, False, False, prompt, raw, last_error)

        logger.warning("extraction exhausted job_id=%s err=%s", job_id, last_error)
        return self._fail(f"AI parsing failed: {last_error}", last_raw)

    def retry_with_feedback(
        self,
        previous: Dict[str, Any],
        errors: List[str],
        job_id: Optional[str] = None,
    ) -> ExtractionOutcome:
        prompt = prompts.build_feedback_prompt(previous, errors)
        started = time.perf_counter()
        raw = ""
        try:
            gen = self.capability.generate(prompts.SYSTEM_PROMPT, prompt, schema=None, timeout_s=self.timeout_s)
            raw = gen.text or ""
            content, repaired = self._parse(raw)
        except Exception as e:
            self._log_attempt(job_id, "feedback", started, False, False, prompt, raw, str(e))
            return self._fail(f"AI parsing failed: {e}", raw)
        self._log_attempt(job_id, "feedback", started, True, repaired, prompt, raw)
        return ExtractionOutcome(ok=True, content=content, strategy="feedback", repaired=repaired)
