"""
Prompt templates for clinical note generation.

These functions construct the chat messages sent to the note-generation model.
They fix the expected JSON output format and the scope of each section.  Extra
per-session-type instructions can be supplied through a ``prompt_templates``
JSON or YAML file placed in the data directory.
"""

from typing import List, Dict, Any, Optional
import json
import os
from functools import lru_cache

import yaml

from .config import get_settings

NOTE_FIELDS = (
    "subjective",
    "objective",
    "assessment",
    "plan",
    "patientComplaint",
    "personalHistory",
    "familyHistory",
    "presentation",
    "formulationAndDiagnosis",
    "treatmentPlan",
    "assignments",
)


@lru_cache()
def _load_custom_templates(base: Optional[str] = None) -> Dict[str, Any]:
    """Load custom prompt templates from a JSON or YAML file if present."""
    base = base or os.getenv("SESSIONSCRIBE_PROMPT_DIR") or str(get_settings().data_dir)
    for name in ("prompt_templates.json", "prompt_templates.yaml", "prompt_templates.yml"):
        path = os.path.join(base, name)
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                if name.endswith("json"):
                    return json.load(f)
                return yaml.safe_load(f) or {}
    return {}


def _resolve_lang(entry: Any, lang: str) -> Optional[str]:
    """Return a language-specific string from ``entry``.

    ``entry`` may either be a plain string or a mapping of language codes to
    strings.  English is used as a fallback when ``lang`` is missing.
    """

    if isinstance(entry, dict):
        return entry.get(lang) or entry.get("en")
    if isinstance(entry, str):
        return entry
    return None


def _get_custom_instruction(session_type: Optional[str], lang: str) -> str:
    """Return the default instruction plus any matching ``session_type`` instruction."""

    templates = _load_custom_templates()
    note_templates = templates.get("clinical_note", {}) if isinstance(templates, dict) else {}
    parts: List[str] = []
    default = _resolve_lang(note_templates.get("default"), lang)
    if default:
        parts.append(default)
    if session_type:
        by_type = note_templates.get("session_types", {})
        if isinstance(by_type, dict):
            extra = _resolve_lang(by_type.get(session_type), lang)
            if extra:
                parts.append(extra)
    return " ".join(parts)


def _schema_example() -> str:
    return json.dumps({name: "..." for name in NOTE_FIELDS}, indent=2)


def build_clinical_note_prompt(
    transcript: str,
    duration_minutes: Optional[int] = None,
    session_type: Optional[str] = None,
    lang: str = "en",
) -> List[Dict[str, str]]:
    """Build the note-generation prompt for a de-identified transcript."""
    instructions = (
        "You are a medical AI assistant specialized in generating SOAP (Subjective, "
        "Objective, Assessment, Plan) notes for therapy sessions.\n\n"
        "Generate a structured SOAP note from the therapy session transcript. Focus on:\n"
        "- Subjective: Patient's reported symptoms, concerns, and experiences\n"
        "- Objective: Observable behaviors, mood, appearance, and clinical observations\n"
        "- Assessment: Clinical interpretation and diagnostic considerations\n"
        "- Plan: Treatment recommendations, interventions, and next steps\n\n"
        "For therapy sessions, also extract:\n"
        "- Patient Complaint: Main presenting issue\n"
        "- Personal History: Relevant personal background\n"
        "- Family History: Relevant family background\n"
        "- Presentation: How the patient presented in the session\n"
        "- Formulation and Diagnosis: Clinical formulation and diagnostic considerations\n"
        "- Treatment Plan: Recommended therapeutic interventions\n"
        "- Assignments: Homework or tasks assigned to the patient\n\n"
        "Placeholders such as [PATIENT_NAME], [LOCATION], [PHONE] and [EMAIL] stand for "
        "redacted identifiers; keep them exactly as written and never guess the "
        "original values. Do not invent information that is not present in the "
        "transcript; leave a field empty when the transcript does not cover it. "
        "Return the response as a single JSON object with these fields."
    )
    extra = _get_custom_instruction(session_type, lang)
    if extra:
        instructions = f"{instructions} {extra}"
    if lang != "en":
        instructions = f"{instructions} Write the note in the language with code '{lang}'."

    lines = ["Generate a SOAP note from this therapy session transcript:", "", transcript, ""]
    if duration_minutes:
        lines.append(f"Session duration: {duration_minutes} minutes")
    if session_type:
        lines.append(f"Session type: {session_type}")
    lines.extend(
        [
            "",
            "Return the SOAP note as a JSON object with the following structure:",
            _schema_example(),
        ]
    )
    return [
        {"role": "system", "content": instructions},
        {"role": "user", "content": "\n".join(lines)},
    ]


__all__ = ["NOTE_FIELDS", "build_clinical_note_prompt"]
