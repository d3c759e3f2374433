"""
Identity normalization & hashing.

Canonical forms:
  email → trimmed, lower-cased
  phone → E.164 ("+15551234567"); bare 10-digit numbers get the default country code

hash_identity() is SHA-256, lowercase hex. Empty input hashes to "" so a
missing field never collides with a real one. The same canonical form feeds
both matching (click hashes written at capture time) and enhanced-conversion
delivery, so raw PII never has to leave this process.
"""

import hashlib
import re

_NON_DIGITS = re.compile(r"\D")
_PHONE_CHARS = re.compile(r"^\+?[\d\s().\-/]+$")
_WHITESPACE = re.compile(r"\s+")


def normalize_email(raw: str | None) -> str:
    if not raw:
        return ""
    return raw.strip().lower()


def normalize_phone(raw: str | None, default_country_code: str = "1") -> str:
    """Strip punctuation and return E.164, or "" if no digits remain."""
    if not raw:
        return ""
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return ""
    if len(digits) == 10 and not raw.strip().startswith("+"):
        digits = default_country_code + digits
    return "+" + digits


def normalize(raw: str | None, default_country_code: str = "1") -> str:
    """Canonicalize an identifier whose kind isn't known up front."""
    if not raw:
        return ""
    value = raw.strip()
    if "@" in value:
        return normalize_email(value)
    if _PHONE_CHARS.match(value) and _NON_DIGITS.sub("", value):
        return normalize_phone(value, default_country_code)
    return _WHITESPACE.sub(" ", value).lower()


def hash_identity(normalized: str) -> str:
    if not normalized:
        return ""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def email_hash(raw: str | None) -> str:
    return hash_identity(normalize_email(raw))


def phone_hash(raw: str | None, default_country_code: str = "1") -> str:
    return hash_identity(normalize_phone(raw, default_country_code))


def identity_hashes(
    email: str | None,
    phone: str | None,
    default_country_code: str = "1",
) -> frozenset[str]:
    """Non-empty hashes for whichever identity fields are present."""
    hashes = {email_hash(email), phone_hash(phone, default_country_code)}
    hashes.discard("")
    return frozenset(hashes)
