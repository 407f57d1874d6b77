"""
Input Validation Utilities

Validation and normalization for customer data sent to the payment
provider: email, Mexican phone numbers and display names.
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    EMAIL = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")

    # Mexican numbers: 10 national digits, optionally prefixed with 52 / +52
    PHONE_MEXICO = re.compile(r"^(?:\+?52)?\d{10}$")

    # International phone (E.164 format)
    PHONE_INTERNATIONAL = re.compile(r"^\+[1-9]\d{6,14}$")


class EmailValidator:
    """Email validation and normalization"""

    MAX_LENGTH = 254

    @staticmethod
    def validate(email: str | None) -> bool:
        if not email or len(email) > EmailValidator.MAX_LENGTH:
            return False
        return bool(ValidationPatterns.EMAIL.match(email.strip()))

    @staticmethod
    def normalize(email: str) -> str:
        """Lowercase and trim so lookups and idempotency keys are stable"""
        return email.strip().lower()


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str | None, allow_international: bool = True) -> bool:
        """
        Validate phone number format.

        Args:
            phone: Phone number to validate
            allow_international: Allow any E.164 number

        Returns:
            True if valid, False otherwise
        """
        if not phone:
            return False

        cleaned = re.sub(r"[\s\-\(\)]", "", phone)

        if ValidationPatterns.PHONE_MEXICO.match(cleaned):
            return True

        if allow_international and ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned):
            return True

        return False

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize phone number to E.164. Bare 10-digit numbers get +52.

        Args:
            phone: Phone number to normalize

        Returns:
            Normalized phone number
        """
        cleaned = re.sub(r"[^\d+]", "", phone)

        if cleaned.startswith("+"):
            return cleaned
        if len(cleaned) == 10:
            return "+52" + cleaned
        if cleaned.startswith("52") and len(cleaned) == 12:
            return "+" + cleaned
        return "+" + cleaned


class TextSanitizer:
    """Text sanitization for values forwarded to the provider"""

    @staticmethod
    def sanitize(text: str | None, max_length: int = 200) -> str:
        """
        Trim, cap length, drop null bytes and control characters, collapse spaces.
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = "".join(char for char in sanitized if char >= " ")
        return re.sub(r" +", " ", sanitized)
