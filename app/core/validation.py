"""
Input Validation Utilities

- Kenyan MSISDN validation and normalisation (2547XXXXXXXX / 2541XXXXXXXX)
- Bank account and free-text reference sanitisation
- Fixed-point amount validation (Decimal, never float)
- Subscriber URL validation
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from urllib.parse import urlparse


class ValidationPatterns:
    """Regex patterns for validation"""

    # 07XX / 01XX local, 2547XX / 2541XX international, optional +
    PHONE_KENYA = re.compile(r"^(?:\+?254|0)([17]\d{8})$")

    ACCOUNT_NUMBER = re.compile(r"^[A-Za-z0-9\-]{4,32}$")

    SCRIPT_PATTERNS = [
        re.compile(r"<script[^>]*>", re.IGNORECASE),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"\bon\w+=", re.IGNORECASE),
    ]


class PhoneNumberValidator:
    """Kenyan mobile number validation and normalization"""

    @staticmethod
    def validate(phone: str) -> bool:
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-]", "", phone)
        return bool(ValidationPatterns.PHONE_KENYA.match(cleaned))

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize to the 254XXXXXXXXX form M-Pesa expects.

        >>> PhoneNumberValidator.normalize("0712 345 678")
        '254712345678'
        """
        cleaned = re.sub(r"[\s\-]", "", phone)
        match = ValidationPatterns.PHONE_KENYA.match(cleaned)
        if not match:
            raise ValueError("Phone number must be a Kenyan mobile number (254XXXXXXXXX)")
        return "254" + match.group(1)

    @staticmethod
    def mask(phone: str) -> str:
        """Mask phone number for logging (254712***678)"""
        if len(phone) < 9:
            return "****"
        return phone[:6] + "***" + phone[-3:]


class AmountValidator:
    """Monetary amount validation on Decimal values"""

    MIN_AMOUNT = Decimal("1")
    MAX_AMOUNT = Decimal("999999.99")
    QUANTUM = Decimal("0.01")
    # Numeric(12, 2)
    MAX_SETTLED_AMOUNT = Decimal("9999999999.99")

    @classmethod
    def validate(cls, amount: Decimal) -> tuple[bool, str | None]:
        if not amount.is_finite():
            return False, "Amount must be a finite number"
        if amount <= 0:
            return False, "Amount must be greater than zero"
        if amount < cls.MIN_AMOUNT:
            return False, f"Amount must be at least {cls.MIN_AMOUNT}"
        if amount > cls.MAX_AMOUNT:
            return False, f"Amount cannot exceed {cls.MAX_AMOUNT}"
        if amount != amount.quantize(cls.QUANTUM):
            return False, "Amount cannot have more than 2 decimal places"
        return True, None

    @classmethod
    def to_decimal(cls, value: object) -> Decimal:
        """Parse provider/JSON numbers without going through float"""
        try:
            return Decimal(str(value)).quantize(cls.QUANTUM, rounding=ROUND_HALF_UP)
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid amount: {value!r}") from e

    @classmethod
    def to_settled_amount(cls, value: object) -> Decimal:
        """Amount reported by a provider; must fit the settled_amount column"""
        amount = cls.to_decimal(value)
        if not amount.is_finite() or amount < 0 or amount > cls.MAX_SETTLED_AMOUNT:
            raise ValueError(f"Settled amount out of range: {value!r}")
        return amount


class TextSanitizer:
    """Text sanitization for references and descriptions"""

    @staticmethod
    def sanitize(text: str, max_length: int = 255) -> str:
        if not text:
            return ""
        # תווי בקרה ו-null bytes לא נשמרים
        cleaned = "".join(ch for ch in text if ch >= " " or ch == "\t")
        cleaned = re.sub(r" +", " ", cleaned.strip())
        return cleaned[:max_length]

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        for pattern in ValidationPatterns.SCRIPT_PATTERNS:
            if pattern.search(text):
                return False, "Script content is not allowed"
        return True, None


# Pydantic field validators for reuse
def phone_validator(v: str | None) -> str | None:
    """Pydantic field validator for Kenyan phone numbers"""
    if v is None:
        return None
    return PhoneNumberValidator.normalize(v)


def account_number_validator(v: str | None) -> str | None:
    if v is None:
        return None
    v = v.strip()
    if not ValidationPatterns.ACCOUNT_NUMBER.match(v):
        raise ValueError("Account number must be 4-32 letters, digits or dashes")
    return v


def amount_validator(v: Decimal) -> Decimal:
    is_valid, error = AmountValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return v


def sanitized_text_validator(v: str | None, max_length: int = 255) -> str | None:
    """Pydantic field validator for sanitized text"""
    if v is None:
        return None
    is_safe, reason = TextSanitizer.check_for_injection(v)
    if not is_safe:
        raise ValueError(reason)
    return TextSanitizer.sanitize(v, max_length) or None


def webhook_url_validator(v: str) -> str:
    """Absolute http(s) URL with a host"""
    parsed = urlparse(v.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("URL must be an absolute http:// or https:// URL")
    return v.strip()
