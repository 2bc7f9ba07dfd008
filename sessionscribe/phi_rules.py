"""Rule tables for PHI matching, registered per region.

Each region contributes phone patterns and two closed gazetteers (place names
and first names).  Tables are frozen at import time; add a region by
registering a new :class:`RegionRules` rather than editing the redactor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Tuple


@dataclass(frozen=True)
class RegionRules:
    region: str
    phone_patterns: Tuple[re.Pattern, ...]
    locations: Tuple[str, ...]
    first_names: Tuple[str, ...]


# +234 / 234 country prefix, then 0 local prefix.  Mobile ranges start 7, 8 or 9.
NG_PHONE_PATTERNS = (
    re.compile(r"\+?234[789]\d{9}"),
    re.compile(r"0[789]\d{9}"),
)

NG_LOCATIONS = (
    # States
    "Abia", "Adamawa", "Akwa Ibom", "Anambra", "Bauchi", "Bayelsa", "Benue", "Borno",
    "Cross River", "Delta", "Ebonyi", "Edo", "Ekiti", "Enugu", "Gombe", "Imo",
    "Jigawa", "Kaduna", "Kano", "Katsina", "Kebbi", "Kogi", "Kwara", "Lagos",
    "Nasarawa", "Niger", "Ogun", "Ondo", "Osun", "Oyo", "Plateau", "Rivers",
    "Sokoto", "Taraba", "Yobe", "Zamfara", "FCT",
    # Major cities
    "Abuja", "Ibadan", "Port Harcourt", "Benin City", "Aba", "Maiduguri", "Ilorin",
    "Onitsha", "Warri", "Abeokuta", "Calabar", "Uyo", "Akure", "Owerri", "Oshogbo",
    "Jos", "Yola",
)

NG_FIRST_NAMES = (
    # Yoruba
    "Ade", "Bola", "Funke", "Kemi", "Olumide", "Tunde", "Yemi", "Segun", "Folake", "Bimbo",
    "Adebayo", "Adenike", "Ayodele", "Babatunde", "Folajimi", "Olumuyiwa", "Toluwalase",
    # Igbo
    "Chika", "Chidi", "Ngozi", "Ifeoma", "Obinna", "Chioma", "Emeka", "Adaora", "Kelechi", "Amara",
    "Chinonso", "Chiamaka", "Tochukwu", "Onyinye", "Ndidi", "Chibuzo",
    # Hausa
    "Amina", "Fatima", "Hassan", "Ibrahim", "Maryam", "Musa", "Aisha", "Yusuf", "Zainab", "Halima",
    "Abdullahi", "Hamza", "Sadiq", "Bashir",
    # Common across regions
    "Blessing", "Faith", "Grace", "Hope", "Joy", "Peace", "Patience", "Mercy",
    "David", "Michael", "John", "Peter", "Paul", "James", "Joseph", "Daniel",
)

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

HONORIFIC_PATTERN = re.compile(r"\b(?:Mr|Mrs|Miss|Ms|Dr|Prof)\.?\s+([A-Z][a-z]+)\b")


_REGISTRY: Dict[str, RegionRules] = {
    "ng": RegionRules(
        region="ng",
        phone_patterns=NG_PHONE_PATTERNS,
        locations=NG_LOCATIONS,
        first_names=NG_FIRST_NAMES,
    ),
}

REGIONS: Mapping[str, RegionRules] = MappingProxyType(_REGISTRY)


def register_region(rules: RegionRules) -> None:
    """Register rule tables for a new region code."""

    key = rules.region.strip().lower()
    if key in _REGISTRY:
        raise ValueError(f"PHI rules already registered for region {key!r}")
    _REGISTRY[key] = rules


def get_region(region: str) -> RegionRules:
    try:
        return REGIONS[region.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"No PHI rules registered for region {region!r}") from exc


__all__ = [
    "RegionRules",
    "EMAIL_PATTERN",
    "HONORIFIC_PATTERN",
    "REGIONS",
    "register_region",
    "get_region",
]
