"""Field validation rules, applied identically whichever channel collected the value.

Every validator returns the full list of violated rules (empty when valid), so a re-prompt
can show every problem at once.
"""
import re

from tokoreg.services.auth import hash_pin

MIN_STORE_NAME_LENGTH = 3
MAX_STORE_NAME_LENGTH = 100
MIN_OWNER_NAME_LENGTH = 2
MAX_OWNER_NAME_LENGTH = 100
PIN_LENGTH = 6
PIN_MIN_DISTINCT_DIGITS = 3

BLOCKED_WORDS = (
    "admin", "administrator", "root", "system", "tokoreg", "test",
    "null", "undefined", "script", "select", "drop", "insert",
)

# 012345..567890 and their reverses (12 total)
_ASCENDING_RUNS = tuple("0123456789"[i:i + PIN_LENGTH] for i in range(5)) + ("567890",)
SEQUENTIAL_PINS = frozenset(_ASCENDING_RUNS + tuple(run[::-1] for run in _ASCENDING_RUNS))

_INJECTION = re.compile(r"<[^>]*>|javascript:|on\w+=", re.IGNORECASE)
_ALL_DIGITS = re.compile(r"^\d+$")
_ONLY_SPECIAL = re.compile(r"^[\s\-_.]+$")
# Unicode letters plus space, period, hyphen, apostrophe
_OWNER_NAME_CHARS = re.compile(r"^(?:[^\W\d_]|[\s.\-'])+$")
_REPEATED = re.compile(r"^(\d)\1{5}$")
_WHITESPACE = re.compile(r"\s+")

FIELD_LABELS = {
    "store_name": "store name",
    "owner_name": "owner name",
    "pin_hash": "PIN",
}


def sanitize_text(value: str) -> str:
    """Trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", (value or "").strip())


def validate_store_name(raw: str | None) -> list[str]:
    value = (raw or "").strip()
    if not value:
        return ["Store name is required."]
    errors = []
    if len(value) < MIN_STORE_NAME_LENGTH:
        errors.append(f"Store name must be at least {MIN_STORE_NAME_LENGTH} characters.")
    if len(value) > MAX_STORE_NAME_LENGTH:
        errors.append(f"Store name cannot exceed {MAX_STORE_NAME_LENGTH} characters.")
    if _ALL_DIGITS.match(value):
        errors.append("Store name cannot be only numbers.")
    if _ONLY_SPECIAL.match(value):
        errors.append("Store name cannot be only special characters.")
    lowered = value.lower()
    if any(word in lowered for word in BLOCKED_WORDS):
        errors.append("Store name contains a word that is not allowed.")
    if _INJECTION.search(value):
        errors.append("Store name contains invalid characters.")
    return errors


def validate_owner_name(raw: str | None) -> list[str]:
    value = (raw or "").strip()
    if not value:
        return ["Owner name is required."]
    errors = []
    if len(value) < MIN_OWNER_NAME_LENGTH:
        errors.append(f"Owner name must be at least {MIN_OWNER_NAME_LENGTH} characters.")
    if len(value) > MAX_OWNER_NAME_LENGTH:
        errors.append(f"Owner name cannot exceed {MAX_OWNER_NAME_LENGTH} characters.")
    if _ALL_DIGITS.match(value):
        errors.append("Owner name cannot be only numbers.")
    if not _OWNER_NAME_CHARS.match(value):
        errors.append("Owner name may only contain letters, spaces, periods, hyphens and apostrophes.")
    if _INJECTION.search(value):
        errors.append("Owner name contains invalid characters.")
    return errors


def validate_pin(raw: str | None) -> list[str]:
    value = (raw or "").strip()
    if not value:
        return ["PIN is required."]
    errors = []
    digits_only = bool(_ALL_DIGITS.match(value))
    if not digits_only:
        errors.append("PIN must contain digits only.")
    if len(value) != PIN_LENGTH:
        errors.append(f"PIN must be exactly {PIN_LENGTH} digits.")
    if not digits_only:
        return errors
    if _REPEATED.match(value):
        errors.append("PIN cannot be one repeated digit (e.g. 111111).")
    if value in SEQUENTIAL_PINS:
        errors.append("PIN cannot be a sequence (e.g. 123456 or 654321).")
    if len(set(value)) < PIN_MIN_DISTINCT_DIGITS:
        errors.append(f"PIN must contain at least {PIN_MIN_DISTINCT_DIGITS} different digits.")
    return errors


_VALIDATORS = {
    "store_name": validate_store_name,
    "owner_name": validate_owner_name,
    "pin_hash": validate_pin,
}


def validate_field(field: str, raw: str | None) -> list[str]:
    """Dispatch by collected-field name; pin_hash validates the raw PIN."""
    validator = _VALIDATORS.get(field)
    if validator is None:
        return [f"Unknown field: {field}"]
    return validator(raw)


def prepare_field(field: str, raw: str | None) -> tuple[str | None, list[str]]:
    """Validate one raw input and return the value to store (sanitized name or PIN hash).

    The raw PIN never leaves this function unhashed.
    """
    errors = validate_field(field, raw)
    if errors:
        return None, errors
    if field == "pin_hash":
        return hash_pin(raw.strip()), []
    return sanitize_text(raw), []


def prepare_fields(values: dict[str, str | None]) -> tuple[dict[str, str], list[str]]:
    """Validate several inputs at once; returns the storable values only when all pass."""
    prepared: dict[str, str] = {}
    errors: list[str] = []
    for field in ("store_name", "owner_name", "pin_hash"):
        raw = values.get(field)
        if raw is None or not str(raw).strip():
            continue
        value, field_errors = prepare_field(field, raw)
        if field_errors:
            errors.extend(field_errors)
        else:
            prepared[field] = value
    if errors:
        return {}, errors
    return prepared, []
