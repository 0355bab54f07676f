"""
Phone Normalization

Maps every representation of a phone number (WhatsApp JID, with or without
country code, with or without formatting) to one E.164 string. The result is
a conversation key component, so normalize_phone(normalize_phone(x)) must
equal normalize_phone(x).
"""

import re

import phonenumbers

from whatsapp_sessions.errors import ValidationError

DEFAULT_REGION = "BR"

# E.164 allows at most 15 digits
MIN_DIGITS = 5
MAX_DIGITS = 15

_NON_DIGITS = re.compile(r"\D")

# JID servers that do not identify a single contact
NON_CONTACT_SERVERS = frozenset({"g.us", "broadcast", "newsletter"})


def strip_jid(value: str) -> str:
    """
    Drop the WhatsApp JID server and device parts.

    "5511999998888:12@s.whatsapp.net" -> "5511999998888"

    Raises:
        ValidationError: Group, broadcast or channel JIDs
    """
    if "@" not in value:
        return value
    user, _, server = value.partition("@")
    if server.lower() in NON_CONTACT_SERVERS:
        raise ValidationError(f"Not a contact address: @{server}", code="invalid_phone")
    return user.split(":", 1)[0]


def normalize_phone(value: str | None, default_region: str = DEFAULT_REGION) -> str:
    """
    Normalize a phone number to E.164 ("+5511987654321").

    Numbers written with "+" or "00" are read internationally. Bare digit
    strings are first read as national numbers of default_region (which also
    recognizes a leading country code of that region), then internationally.
    Digit strings no rule validates are kept as "+<digits>".

    Args:
        value: Phone in any format, or a WhatsApp JID
        default_region: ISO region for national numbers

    Returns:
        E.164 phone number

    Raises:
        ValidationError: No usable digits, or not a contact address
    """
    if value is None:
        raise ValidationError("Phone number is required", code="invalid_phone")

    raw = strip_jid(str(value).strip())
    digits = _NON_DIGITS.sub("", raw)

    if raw.startswith("00"):
        digits = digits[2:]
        candidates = [(f"+{digits}", None)]
    elif raw.startswith("+"):
        candidates = [(f"+{digits}", None)]
    else:
        candidates = [(digits, default_region), (f"+{digits}", None)]

    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        raise ValidationError(f"Un-normalizable phone number: {value!r}", code="invalid_phone")

    for text, region in candidates:
        try:
            parsed = phonenumbers.parse(text, region)
        except phonenumbers.NumberParseException:
            continue
        if phonenumbers.is_valid_number(parsed):
            return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)

    return f"+{digits}"


def chat_id_for(phone: str) -> str:
    """WhatsApp chat id of a normalized phone: "+5511..." -> "5511...@c.us"."""
    return f"{_NON_DIGITS.sub('', phone)}@c.us"
