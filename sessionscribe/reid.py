"""Reverse placeholder substitution for authorised rendering."""

from __future__ import annotations

from typing import Mapping, Optional, Union

from .deid import PLACEHOLDER_PATTERN
from .models import ClinicalNote, PHICategory

PHIValues = Mapping[Union[PHICategory, str], Optional[str]]

# Caller-facing aliases for the coarse categories.
_ALIASES = {
    "patientname": PHICategory.PATIENT_NAME,
    "patient_name": PHICategory.PATIENT_NAME,
    "clientname": PHICategory.PATIENT_NAME,
    "location": PHICategory.LOCATION,
    "phone": PHICategory.PHONE,
    "email": PHICategory.EMAIL,
}


def _normalise(phi_map: PHIValues) -> dict[PHICategory, str]:
    resolved: dict[PHICategory, str] = {}
    for key, value in phi_map.items():
        if not value:
            continue
        if isinstance(key, PHICategory):
            category = key
        else:
            lookup = str(key).strip()
            category = _ALIASES.get(lookup.lower())
            if category is None:
                try:
                    category = PHICategory(lookup.upper())
                except ValueError:
                    continue
        resolved[category] = value
    return resolved


def reidentify(text: str, phi_map: PHIValues) -> str:
    """Replace placeholders whose category has a value in ``phi_map``.

    Placeholders without a corresponding (non-empty) value are left as they are.
    """

    if not text:
        return text
    values = _normalise(phi_map)
    if not values:
        return text

    def _swap(match) -> str:
        category = PHICategory(match.group(0)[1:-1])
        return values.get(category, match.group(0))

    return PLACEHOLDER_PATTERN.sub(_swap, text)


def reidentify_note(note: ClinicalNote, phi_map: PHIValues) -> ClinicalNote:
    """Return a copy of ``note`` with every text field re-identified."""

    restored = {
        name: reidentify(value, phi_map) if isinstance(value, str) else value
        for name, value in note.text_fields().items()
    }
    return ClinicalNote(**restored)


__all__ = ["reidentify", "reidentify_note"]
