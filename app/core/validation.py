"""
Input Validation Utilities

Validation and normalization for customer contact data arriving from
payment metadata and the inquiry form:
- Email validation and normalization
- Loose international phone validation
- Text sanitization for storage and HTML alert bodies
"""
import re
import html


class ValidationPatterns:
    """Regex patterns for validation"""

    EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

    # Digits with optional leading +, spaces, dashes and parentheses
    PHONE = re.compile(r"^\+?[\d\s\-\(\)]{7,20}$")

    # Latin names with common punctuation
    NAME = re.compile(r"^[^\x00-\x1f<>]{1,100}$")

    XSS_PATTERNS = [
        re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"\bon\w+=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
    ]


class EmailValidator:
    """Email validation and normalization"""

    @staticmethod
    def validate(email: str) -> bool:
        if not email:
            return False
        return bool(ValidationPatterns.EMAIL.match(email.strip()))

    @staticmethod
    def normalize(email: str) -> str:
        """Trim and lowercase; reservations and rate limits key on this form"""
        return email.strip().lower()


class PhoneNumberValidator:
    """Phone number validation"""

    @staticmethod
    def validate(phone: str) -> bool:
        if not phone:
            return False
        return bool(ValidationPatterns.PHONE.match(phone.strip()))


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Sanitize text input for safe storage.

        Does NOT HTML-escape; use sanitize_for_html() when rendering.
        Trims, enforces max length, drops control characters and collapses
        runs of spaces.
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = "".join(
            char for char in sanitized
            if char >= " " or char in "\n\r\t"
        )
        return re.sub(r" +", " ", sanitized)

    @staticmethod
    def sanitize_for_html(text: object) -> str:
        """HTML-escape any value for an alert email body"""
        if text is None:
            return ""
        return html.escape(str(text))

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """
        Check text for script injection.

        Returns:
            Tuple of (is_safe, detected_pattern)
        """
        if not text:
            return True, None

        for pattern in ValidationPatterns.XSS_PATTERNS:
            if pattern.search(text):
                return False, "XSS pattern detected"

        return True, None


# Pydantic field validators for reuse
def email_validator(v: str | None) -> str | None:
    """Pydantic field validator for emails"""
    if v is None:
        return None
    if not EmailValidator.validate(v):
        raise ValueError("Invalid email format")
    return EmailValidator.normalize(v)


def phone_validator(v: str | None) -> str | None:
    """Pydantic field validator for optional phone numbers; blank becomes None"""
    if v is None or not v.strip():
        return None
    if not PhoneNumberValidator.validate(v):
        raise ValueError("Invalid phone number format")
    return v.strip()


def name_validator(v: str | None) -> str | None:
    """Pydantic field validator for optional names; blank becomes None"""
    if v is None or not v.strip():
        return None
    if not ValidationPatterns.NAME.match(v.strip()):
        raise ValueError("Name too long or contains invalid characters")
    return TextSanitizer.sanitize(v, max_length=100)


def sanitized_text_validator(v: str | None, max_length: int = 1000) -> str | None:
    """Pydantic field validator for sanitized free text"""
    if v is None:
        return None
    is_safe, pattern = TextSanitizer.check_for_injection(v)
    if not is_safe:
        raise ValueError(f"Invalid input: {pattern}")
    return TextSanitizer.sanitize(v, max_length) or None
