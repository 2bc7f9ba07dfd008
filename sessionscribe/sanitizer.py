import html
from typing import Mapping, Optional

import bleach


def sanitize_text(value: str) -> str:
    """Return a sanitized version of *value* with HTML tags stripped.

    Model output is rendered on the review surface, so markup is removed
    before it is stored.  Clinical text keeps its literal ``<``, ``>`` and
    ``&`` characters; the renderer escapes on output.
    """
    return html.unescape(bleach.clean(value, tags=[], attributes={}, strip=True))


def sanitize_fields(values: Mapping[str, Optional[str]]) -> dict:
    """Sanitize every string value in *values*, keeping ``None`` as is."""
    return {key: sanitize_text(value) if isinstance(value, str) else value for key, value in values.items()}
