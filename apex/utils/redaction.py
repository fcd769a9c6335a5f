"""
Payload redaction - strips PII and secrets before a payload is stored.

Key-based rules match on the normalized key (lowercase, no "_" or "-"), so
phoneNumber, phone_number and phone-number are all caught. Value-based rules
catch E.164 phone numbers and card numbers wherever they appear.
"""
import re
from typing import Any

REDACTED = "[REDACTED]"
REDACTED_CONTENT = "[REDACTED_CONTENT]"
REDACTED_SECRET = "[REDACTED_SECRET]"

PII_KEYS = frozenset({
    "phone",
    "phonenumber",
    "customernumber",
    "number",
    "name",
    "customername",
    "firstname",
    "lastname",
    "email",
    "customeremail",
    "cardnumber",
    "cvc",
    "cvv",
})

# Postal addresses arrive as objects - replaced wholesale
ADDRESS_KEYS = frozenset({
    "address",
    "customeraddress",
    "billingaddress",
    "shippingaddress",
})

# Free-form conversation content - replaced wholesale, whatever its type
CONTENT_KEYS = frozenset({
    "transcript",
    "summary",
    "messages",
    "messagesopenaiformatted",
    "recordingurl",
    "stereorecordingurl",
})

SECRET_KEYS = frozenset({
    "apikey",
    "privatekey",
    "vapiprivatekey",
    "secret",
    "clientsecret",
    "webhooksecret",
    "token",
    "accesstoken",
    "refreshtoken",
    "password",
    "authorization",
})

_E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
_CARD_RE = re.compile(r"^(?:\d[ -]?){13,19}$")


def _normalize_key(key: str) -> str:
    return key.lower().replace("_", "").replace("-", "")


def _luhn_valid(digits: str) -> bool:
    total = 0
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


def looks_like_card_number(value: str) -> bool:
    if not _CARD_RE.match(value):
        return False
    digits = re.sub(r"\D", "", value)
    return 13 <= len(digits) <= 19 and _luhn_valid(digits)


def _redact_string(value: str) -> str:
    stripped = value.strip()
    if _E164_RE.match(stripped) or looks_like_card_number(stripped):
        return REDACTED
    return value


def redact_payload(obj: Any) -> Any:
    """
    Return a redacted deep copy of a JSON-like payload.
    The input is never mutated.
    """
    if isinstance(obj, dict):
        redacted = {}
        for key, value in obj.items():
            norm = _normalize_key(str(key))
            if norm in SECRET_KEYS:
                redacted[key] = REDACTED_SECRET if value is not None else None
            elif norm in CONTENT_KEYS:
                redacted[key] = REDACTED_CONTENT if value is not None else None
            elif norm in ADDRESS_KEYS:
                redacted[key] = REDACTED if value is not None else None
            elif norm in PII_KEYS and isinstance(value, (str, int)):
                redacted[key] = REDACTED
            else:
                redacted[key] = redact_payload(value)
        return redacted
    if isinstance(obj, list):
        return [redact_payload(item) for item in obj]
    if isinstance(obj, str):
        return _redact_string(obj)
    return obj


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logs, keeping the last 4 digits."""
    if not phone or len(phone) < 4:
        return "***"
    return f"***-{phone[-4:]}"
