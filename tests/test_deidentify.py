import re

import pytest

from sessionscribe import phi_rules
from sessionscribe.deid import PHIRedactor, build_rules, deidentify
from sessionscribe.models import PHICategory


def test_deidentify_mixed_identifiers():
    result, phi_map = deidentify("Call Dr. Chidi at 08031234567 about Lagos appointment")
    assert result.text == "Call Dr. [PATIENT_NAME] at [PHONE] about [LOCATION] appointment"
    assert phi_map == {
        PHICategory.PATIENT_NAME: "Chidi",
        PHICategory.PHONE: "08031234567",
        PHICategory.LOCATION: "Lagos",
    }
    assert result.substitutions == 3


@pytest.mark.parametrize(
    "text,expected,category,raw",
    [
        ("Reach me on +2348031234567 today", "Reach me on [PHONE] today", PHICategory.PHONE, "+2348031234567"),
        ("Reach me on 2349087654321 today", "Reach me on [PHONE] today", PHICategory.PHONE, "2349087654321"),
        ("Email ada.obi@example.com later", "Email [EMAIL] later", PHICategory.EMAIL, "ada.obi@example.com"),
        ("She moved to Port Harcourt last year", "She moved to [LOCATION] last year", PHICategory.LOCATION, "Port Harcourt"),
        ("She grew up in lagos", "She grew up in [LOCATION]", PHICategory.LOCATION, "lagos"),
        ("Mrs. Okafor said she sleeps badly", "Mrs. [PATIENT_NAME] said she sleeps badly", PHICategory.PATIENT_NAME, "Okafor"),
        ("Ngozi reports low mood", "[PATIENT_NAME] reports low mood", PHICategory.PATIENT_NAME, "Ngozi"),
    ],
)
def test_deidentify_single_category(text, expected, category, raw):
    result, phi_map = deidentify(text)
    assert result.text == expected
    assert phi_map[category] == raw
    assert raw not in result.text


def test_deidentify_last_value_wins_per_category():
    result, phi_map = deidentify("Chidi spoke with Ngozi about the week")
    assert result.text == "[PATIENT_NAME] spoke with [PATIENT_NAME] about the week"
    assert phi_map[PHICategory.PATIENT_NAME] == "Ngozi"
    assert result.category_counts[PHICategory.PATIENT_NAME] == 2


def test_deidentify_whole_words_only():
    result, phi_map = deidentify("The Adebayor file was reviewed")
    assert result.text == "The Adebayor file was reviewed"
    assert phi_map == {}


def test_deidentify_is_idempotent():
    text = "Mr. Emeka from Abuja, call 07012345678 or emeka@example.org"
    first, _ = deidentify(text)
    second, second_map = deidentify(first.text)
    assert second.text == first.text
    assert second_map == {}
    assert second.substitutions == 0


def test_deidentify_is_deterministic():
    text = "Dr. Bola met Amina in Kano; call 09011112222"
    assert deidentify(text) == deidentify(text)


def test_deidentify_leaves_no_raw_values():
    text = "Mrs. Adaora lives in Enugu, phone 08122223333, email adaora@mail.com"
    result, phi_map = deidentify(text)
    for value in phi_map.values():
        assert value not in result.text
    assert re.findall(r"\[[A-Z_]+\]", result.text)


def test_deidentify_preserves_existing_placeholders():
    result, phi_map = deidentify("[PATIENT_NAME] described [LOCATION] traffic")
    assert result.text == "[PATIENT_NAME] described [LOCATION] traffic"
    assert phi_map == {}


def test_deidentify_empty_text():
    result, phi_map = deidentify("")
    assert result.text == ""
    assert phi_map == {}


def test_unknown_region_rejected():
    with pytest.raises(ValueError):
        deidentify("hello", region="zz")


def test_duplicate_region_rejected():
    with pytest.raises(ValueError):
        phi_rules.register_region(phi_rules.REGIONS["ng"])


def test_custom_region_rules(monkeypatch):
    rules = phi_rules.RegionRules(
        region="ke",
        phone_patterns=(re.compile(r"\+?254 ?7\d{8}"),),
        locations=("Nairobi", "Mombasa"),
        first_names=("Wanjiru",),
    )
    monkeypatch.setitem(phi_rules._REGISTRY, "ke", rules)
    redactor = PHIRedactor(build_rules(phi_rules.get_region("ke")))
    result, phi_map = redactor.deidentify("Wanjiru from Nairobi, +254712345678")
    assert result.text == "[PATIENT_NAME] from [LOCATION], [PHONE]"
    assert phi_map[PHICategory.LOCATION] == "Nairobi"


def test_deidentify_redacts_repeated_honorific_name():
    result, phi_map = deidentify("Dr. Okafor arrived. Later Okafor was calm.")
    assert result.text == "Dr. [PATIENT_NAME] arrived. Later [PATIENT_NAME] was calm."
    assert phi_map[PHICategory.PATIENT_NAME] == "Okafor"
    for value in phi_map.values():
        assert value not in result.text
    assert result.category_counts[PHICategory.PATIENT_NAME] == 2


def test_repeated_name_sweep_is_idempotent_and_case_sensitive():
    text = "Mr. Sunny said Sunny prefers sunny mornings. Okafor's notes: call +2348031234567, +2348031234567."
    first, phi_map = deidentify(text)
    assert "Sunny" not in first.text
    assert "prefers sunny mornings" in first.text
    assert first.text.count("[PHONE]") == 2
    second, second_map = deidentify(first.text)
    assert second.text == first.text
    assert second_map == {}
