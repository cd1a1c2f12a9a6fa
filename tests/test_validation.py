"""Field validation rules shared by both channels."""
import pytest

from tokoreg.services.auth import verify_pin
from tokoreg.services.validation import (
    SEQUENTIAL_PINS,
    prepare_field,
    prepare_fields,
    validate_owner_name,
    validate_pin,
    validate_store_name,
)


@pytest.mark.unit
class TestPin:
    def test_accepts_mixed_digits(self):
        assert validate_pin("112233") == []
        assert validate_pin("583920") == []

    @pytest.mark.parametrize("pin", ["111111", "000000"])
    def test_rejects_repeated_digit(self, pin):
        assert any("repeated" in e for e in validate_pin(pin))

    @pytest.mark.parametrize("pin", ["123456", "654321", "012345", "567890", "098765"])
    def test_rejects_sequences(self, pin):
        assert any("sequence" in e for e in validate_pin(pin))

    def test_sequence_table_has_both_directions(self):
        assert len(SEQUENTIAL_PINS) == 12

    def test_rejects_two_distinct_digits(self):
        assert any("3 different digits" in e for e in validate_pin("121212"))

    def test_rejects_non_digits_and_wrong_length(self):
        assert validate_pin("12a456") == ["PIN must contain digits only."]
        assert any("exactly 6" in e for e in validate_pin("58392"))
        assert validate_pin("") == ["PIN is required."]

    def test_reports_every_violation_for_short_non_digit_pin(self):
        assert validate_pin("12a") == ["PIN must contain digits only.", "PIN must be exactly 6 digits."]


@pytest.mark.unit
class TestStoreName:
    def test_accepts_normal_name(self):
        assert validate_store_name("Toko Sembako Makmur") == []

    def test_reports_every_problem(self):
        errors = validate_store_name("12")
        assert any("at least 3" in e for e in errors)
        assert any("only numbers" in e for e in errors)

    @pytest.mark.parametrize("name", ["Admin Store", "My Test Shop", "root beer"])
    def test_blocked_words(self, name):
        assert any("not allowed" in e for e in validate_store_name(name))

    def test_markup_rejected(self):
        assert any("invalid characters" in e for e in validate_store_name("<b>Warung</b>"))

    def test_only_special(self):
        assert any("special characters" in e for e in validate_store_name("---"))


@pytest.mark.unit
class TestOwnerName:
    def test_accepts_letters_and_punctuation(self):
        assert validate_owner_name("Siti Aminah") == []
        assert validate_owner_name("Ni Made O'Neil-Putri Jr.") == []

    def test_rejects_digits(self):
        assert any("may only contain" in e for e in validate_owner_name("Budi 123"))

    def test_too_short(self):
        assert any("at least 2" in e for e in validate_owner_name("B"))


@pytest.mark.unit
def test_prepare_field_hashes_pin():
    value, errors = prepare_field("pin_hash", " 112233 ")
    assert errors == []
    assert value != "112233"
    assert verify_pin("112233", value)


@pytest.mark.unit
def test_prepare_field_sanitizes_names():
    assert prepare_field("store_name", "  Warung   Berkah ") == ("Warung Berkah", [])


@pytest.mark.unit
def test_prepare_fields_all_or_nothing():
    prepared, errors = prepare_fields({"store_name": "Warung Berkah", "owner_name": "B", "pin_hash": None})
    assert prepared == {}
    assert any("Owner name" in e for e in errors)

    prepared, errors = prepare_fields({"store_name": "Warung Berkah", "owner_name": "", "pin_hash": None})
    assert errors == []
    assert prepared == {"store_name": "Warung Berkah"}
