"""
Phone number normalization to E.164 using the phonenumbers library.
"""
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)


def normalize_phone_e164(phone: Optional[str], default_region: str = "US") -> Optional[str]:
    """
    Normalize a phone number to E.164.

    (555) 123-4567, 555.123.4567, 1-555-123-4567 and +15551234567 all become
    +15551234567. Returns None when the number cannot be parsed or is not
    even a possible number for its region.
    """
    if not phone or not phone.strip():
        return None

    try:
        parsed = phonenumbers.parse(phone.strip(), default_region)
    except phonenumbers.NumberParseException:
        return None

    # "Possible" rather than "valid" so unassigned demo exchanges (555) still dial
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
