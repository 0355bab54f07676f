"""
Tests for phone normalization.
"""

import pytest

from whatsapp_sessions.errors import ValidationError
from whatsapp_sessions.routing.phone import normalize_phone, strip_jid

EQUIVALENT_FORMS = [
    "+5511999998888",
    "5511999998888",
    "5511999998888@c.us",
    "5511999998888@s.whatsapp.net",
    "5511999998888:23@s.whatsapp.net",
    "+55 (11) 99999-8888",
    "0055 11 99999 8888",
    "(11) 99999-8888",
    "11999998888",
]


class TestNormalizePhone:
    """Tests for E.164 normalization."""

    @pytest.mark.parametrize("value", EQUIVALENT_FORMS)
    def test_equivalent_forms_normalize_identically(self, value, sample_phone):
        """Test every representation of one number maps to the same key."""
        assert normalize_phone(value) == sample_phone

    @pytest.mark.parametrize(
        "value",
        EQUIVALENT_FORMS + ["+14155552671", "4915112345678@c.us", "1234567", "+999123456789"],
    )
    def test_idempotent(self, value):
        """Test normalizing a normalized number changes nothing."""
        once = normalize_phone(value)
        assert normalize_phone(once) == once
        assert once.startswith("+")

    def test_other_country_with_country_code(self):
        """Test numbers written with their own country code keep it."""
        assert normalize_phone("+1 415 555 2671") == "+14155552671"
        assert normalize_phone("14155552671@c.us") == "+14155552671"

    def test_default_region_is_configurable(self):
        """Test national numbers are read in the given region."""
        assert normalize_phone("(650) 253-0000", default_region="US") == "+16502530000"

    def test_unknown_digits_kept(self):
        """Test digit strings no rule validates still get a stable key."""
        assert normalize_phone("+999123456789") == "+999123456789"

    @pytest.mark.parametrize("value", [None, "", "abc", "123", "1" * 16])
    def test_unusable_values_rejected(self, value):
        """Test values without a usable number are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            normalize_phone(value)
        assert exc_info.value.code == "invalid_phone"

    @pytest.mark.parametrize("value", ["120363025246125486@g.us", "status@broadcast"])
    def test_group_and_broadcast_jids_rejected(self, value):
        """Test JIDs that are not a single contact are rejected."""
        with pytest.raises(ValidationError):
            normalize_phone(value)


class TestStripJid:
    """Tests for JID stripping."""

    def test_strips_server_and_device(self):
        assert strip_jid("5511999998888:12@s.whatsapp.net") == "5511999998888"

    def test_plain_number_unchanged(self):
        assert strip_jid("+5511999998888") == "+5511999998888"
