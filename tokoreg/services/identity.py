"""Identity key: one canonical phone key shared by sessions, codes and accounts."""
import re

COUNTRY_PREFIX = "62"
TRUNK_PREFIX = "0"
IDENTITY_MIN_DIGITS = 10
IDENTITY_MAX_DIGITS = 15

_NON_DIGITS = re.compile(r"\D")
# Indonesian mobile numbers: 08xx / 628xx followed by 7-10 more digits
_MOBILE_PATTERN = re.compile(r"^(62|0)8[1-9][0-9]{7,10}$")


def canonicalize(raw: str | None) -> str:
    """Strip non-digits, swap a leading trunk 0 for 62, prepend 62 when missing.

    Idempotent: canonicalize(canonicalize(x)) == canonicalize(x).
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if not digits:
        return ""
    if digits.startswith(TRUNK_PREFIX):
        return COUNTRY_PREFIX + digits[1:]
    if not digits.startswith(COUNTRY_PREFIX):
        return COUNTRY_PREFIX + digits
    return digits


def validate_identity(raw: str | None) -> list[str]:
    """Return every problem with a raw phone number (empty list when valid)."""
    digits = _NON_DIGITS.sub("", raw or "")
    if not digits:
        return ["Phone number is required."]
    errors = []
    if not _MOBILE_PATTERN.match(digits) and not _MOBILE_PATTERN.match(canonicalize(digits)):
        errors.append("Phone number must be an Indonesian mobile number (e.g. 0812-3456-7890 or +62 812-3456-7890).")
    key = canonicalize(digits)
    if len(key) < IDENTITY_MIN_DIGITS:
        errors.append(f"Phone number must have at least {IDENTITY_MIN_DIGITS} digits.")
    if len(key) > IDENTITY_MAX_DIGITS:
        errors.append(f"Phone number cannot exceed {IDENTITY_MAX_DIGITS} digits.")
    return errors


def mask_identity(key: str | None) -> str:
    """6281*****7890 style; safe to log."""
    if not key:
        return "(none)"
    if len(key) < 8:
        return "*" * len(key)
    return key[:4] + "*" * (len(key) - 8) + key[-4:]


def format_identity(key: str) -> str:
    """+62 812-3456-7890 for display."""
    key = canonicalize(key)
    if not key.startswith(COUNTRY_PREFIX) or len(key) < 10:
        return f"+{key}" if key else ""
    local = key[len(COUNTRY_PREFIX):]
    groups = [local[:3], local[3:7], local[7:]]
    return f"+{COUNTRY_PREFIX} " + "-".join(g for g in groups if g)
