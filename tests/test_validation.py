"""
Tests for Input Validation Utilities
"""
import pytest
from hypothesis import given
from hypothesis.strategies import text

from permit_payments.core.validation import (
    EmailValidator,
    PhoneNumberValidator,
    TextSanitizer,
)


class TestEmailValidator:
    """Tests for email validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("email,expected", [
        ("cliente@example.com", True),
        ("Cliente.Perez+permisos@correo.gob.mx", True),
        ("  padded@example.com  ", True),
        ("no-at-sign.example.com", False),
        ("missing@tld", False),
        ("", False),
        (None, False),
        ("a" * 250 + "@example.com", False),
    ])
    def test_validate_email(self, email, expected: bool):
        assert EmailValidator.validate(email) == expected

    @pytest.mark.unit
    def test_normalize_email(self):
        """Normalization is what keeps customer idempotency keys stable"""
        assert EmailValidator.normalize("  Cliente@Example.COM ") == "cliente@example.com"


class TestPhoneNumberValidator:
    """Tests for phone number validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("phone,expected", [
        # Mexican numbers
        ("5512345678", True),
        ("55 1234 5678", True),
        ("(55) 1234-5678", True),
        ("+525512345678", True),
        ("525512345678", True),
        # Other E.164 numbers
        ("+14155550123", True),
        # Invalid numbers
        ("123", False),
        ("abcdefghij", False),
        ("", False),
        (None, False),
        ("551234567", False),
    ])
    def test_validate_phone(self, phone, expected: bool):
        assert PhoneNumberValidator.validate(phone) == expected

    @pytest.mark.unit
    def test_international_can_be_disallowed(self):
        assert not PhoneNumberValidator.validate("+14155550123", allow_international=False)
        assert PhoneNumberValidator.validate("+525512345678", allow_international=False)

    @pytest.mark.unit
    def test_normalize_phone(self):
        assert PhoneNumberValidator.normalize("5512345678") == "+525512345678"
        assert PhoneNumberValidator.normalize("55-1234-5678") == "+525512345678"
        assert PhoneNumberValidator.normalize("525512345678") == "+525512345678"
        assert PhoneNumberValidator.normalize("+52 55 1234 5678") == "+525512345678"


class TestTextSanitizer:
    """Tests for text sanitization"""

    @pytest.mark.unit
    def test_sanitize_basic(self):
        assert TextSanitizer.sanitize("  Juan Pérez  ") == "Juan Pérez"

    @pytest.mark.unit
    def test_sanitize_max_length(self):
        assert len(TextSanitizer.sanitize("a" * 500, max_length=100)) == 100

    @pytest.mark.unit
    def test_sanitize_removes_null_bytes_and_control_chars(self):
        assert TextSanitizer.sanitize("Permiso\x00 de\x07 circulación") == "Permiso de circulación"

    @pytest.mark.unit
    def test_sanitize_collapses_spaces(self):
        assert TextSanitizer.sanitize("Juan    Pérez") == "Juan Pérez"

    @pytest.mark.unit
    def test_sanitize_empty(self):
        assert TextSanitizer.sanitize(None) == ""
        assert TextSanitizer.sanitize("   ") == ""

    @pytest.mark.unit
    @given(value=text(max_size=300))
    def test_sanitized_text_has_no_control_characters(self, value: str):
        result = TextSanitizer.sanitize(value)

        assert len(result) <= 200
        assert all(char >= " " for char in result)
        assert "  " not in result
