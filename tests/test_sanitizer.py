import pytest

from sessionscribe.sanitizer import sanitize_fields, sanitize_text


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("<script>alert(1)</script>Calm", "alert(1)Calm"),
        ("<b>Low</b> mood & poor sleep", "Low mood & poor sleep"),
        ("GAD-7 < 5, PHQ-9 > 12", "GAD-7 < 5, PHQ-9 > 12"),
        ("Plain text", "Plain text"),
    ],
)
def test_sanitize_text(raw, expected):
    assert sanitize_text(raw) == expected


def test_sanitize_fields_keeps_none():
    assert sanitize_fields({"plan": "A & B", "assignments": None}) == {"plan": "A & B", "assignments": None}
