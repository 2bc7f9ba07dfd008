"""
Structured clinical note generation over an OpenAI-compatible chat endpoint.

The generator only ever sees de-identified text.  The model is asked for a
JSON object; its reply is decoded by trying each strategy in
``DECODE_STRATEGIES`` in turn (the raw content, then the first fenced code
block) and validating the result against :class:`NoteSchema`.  When no
strategy yields a valid note a :class:`SchemaError` is raised.  Missing
optional sections stay ``None``; nothing is filled in on the model's behalf.
"""

from __future__ import annotations

import json
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from openai import OpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .config import Settings, get_settings
from .errors import GenerationError, SchemaError
from .models import ClinicalNote, SessionContext
from .observability import PROVIDER_FAILURES_TOTAL
from .prompts import build_clinical_note_prompt
from .sanitizer import sanitize_fields

logger = structlog.get_logger(__name__)

FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


class NoteSchema(BaseModel):
    """Wire shape of a generated note (camelCase, as the prompt requests)."""

    model_config = ConfigDict(extra="ignore")

    subjective: str
    objective: str
    assessment: str
    plan: str
    patientComplaint: Optional[str] = None
    personalHistory: Optional[str] = None
    familyHistory: Optional[str] = None
    presentation: Optional[str] = None
    formulationAndDiagnosis: Optional[str] = None
    treatmentPlan: Optional[str] = None
    assignments: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _flatten(cls, value: Any) -> Any:
        # Models sometimes return bullet lists instead of prose.
        if isinstance(value, list):
            return "\n".join(str(item) for item in value if item is not None)
        return value


def _decode_direct(content: str) -> Any:
    return json.loads(content)


def _decode_fenced(content: str) -> Any:
    match = FENCED_BLOCK.search(content)
    if not match:
        raise ValueError("no fenced code block")
    return json.loads(match.group(1))


DECODE_STRATEGIES: Tuple[Tuple[str, Callable[[str], Any]], ...] = (
    ("direct", _decode_direct),
    ("fenced", _decode_fenced),
)


def decode_note(content: str) -> ClinicalNote:
    """Decode model output into a :class:`ClinicalNote` or raise :class:`SchemaError`."""

    failures: List[str] = []
    for name, strategy in DECODE_STRATEGIES:
        try:
            payload = strategy(content)
        except ValueError as exc:
            failures.append(f"{name}: {exc}")
            continue
        if not isinstance(payload, dict):
            failures.append(f"{name}: expected a JSON object")
            continue
        try:
            parsed = NoteSchema.model_validate(payload)
        except ValidationError as exc:
            failures.append(f"{name}: {exc.error_count()} validation error(s)")
            continue
        logger.debug("note_generator.decoded", strategy=name)
        return ClinicalNote.from_dict(parsed.model_dump())
    raise SchemaError("Failed to parse clinical note from model response (" + "; ".join(failures) + ")")


def _create_openai_client(
    api_key: str, *, base_url: str, timeout: float, max_retries: int
) -> OpenAI:
    return OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=max_retries)


class ClinicalNoteGenerator:
    """Generate a :class:`ClinicalNote` from de-identified transcript text."""

    provider = "generation"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._slots = threading.BoundedSemaphore(self._settings.provider_concurrency)
        self._client: Optional[OpenAI] = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> OpenAI:
        api_key = self._settings.note_api_key
        if not api_key:
            raise GenerationError("Note generation API key not configured")
        with self._client_lock:
            if self._client is None:
                self._client = _create_openai_client(
                    api_key,
                    base_url=self._settings.note_api_base,
                    timeout=self._settings.provider_timeout_seconds,
                    max_retries=self._settings.provider_max_retries,
                )
            return self._client

    def _complete(self, messages: List[Dict[str, str]]) -> str:
        client = self._get_client()
        with self._slots:
            try:
                response = client.chat.completions.create(
                    model=self._settings.note_model,
                    messages=messages,
                    temperature=self._settings.note_temperature,
                    response_format={"type": "json_object"},
                )
            except OpenAIError as exc:
                PROVIDER_FAILURES_TOTAL.labels(provider=self.provider).inc()
                logger.warning("note_generator.provider_failed", error=type(exc).__name__)
                raise GenerationError(f"Error calling note model: {exc}") from exc
        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            PROVIDER_FAILURES_TOTAL.labels(provider=self.provider).inc()
            raise GenerationError("No content in note model response")
        return content

    def generate(self, deidentified_text: str, context: Optional[SessionContext] = None) -> ClinicalNote:
        """Blocking call; the pipeline runs it via ``asyncio.to_thread``."""

        if not deidentified_text or not deidentified_text.strip():
            raise GenerationError("Transcript is empty")
        context = context or SessionContext()
        messages = build_clinical_note_prompt(
            deidentified_text,
            duration_minutes=context.duration_minutes,
            session_type=context.session_type,
            lang=context.language,
        )
        logger.info("note_generator.request", chars=len(deidentified_text), model=self._settings.note_model)
        content = self._complete(messages)
        note = decode_note(content)
        return ClinicalNote(**sanitize_fields(note.text_fields()))


__all__ = ["ClinicalNoteGenerator", "NoteSchema", "DECODE_STRATEGIES", "decode_note"]
