"""
Tests for Input Validation Utilities
"""
from decimal import Decimal

import pytest
from hypothesis import given, settings as h_settings, strategies as st

from app.core.validation import (
    AmountValidator,
    PhoneNumberValidator,
    TextSanitizer,
    account_number_validator,
    amount_validator,
    sanitized_text_validator,
    webhook_url_validator,
)


class TestPhoneNumberValidator:
    """Tests for Kenyan MSISDN validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("phone,expected", [
        ("0712345678", True),
        ("0712 345 678", True),
        ("0712-345-678", True),
        ("254712345678", True),
        ("+254712345678", True),
        ("0110345678", True),
        ("254110345678", True),
        # Invalid numbers
        ("0812345678", False),
        ("071234567", False),
        ("25471234567890", False),
        ("+972501234567", False),
        ("abcdefghij", False),
        ("", False),
    ])
    def test_validate(self, phone: str, expected: bool):
        assert PhoneNumberValidator.validate(phone) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("phone", ["0712345678", "+254712345678", "254 712 345 678", "0712-345-678"])
    def test_normalize(self, phone: str):
        assert PhoneNumberValidator.normalize(phone) == "254712345678"

    @pytest.mark.unit
    def test_normalize_rejects_foreign(self):
        with pytest.raises(ValueError):
            PhoneNumberValidator.normalize("+972501234567")

    @pytest.mark.unit
    def test_mask(self):
        assert PhoneNumberValidator.mask("254712345678") == "254712***678"
        assert PhoneNumberValidator.mask("123") == "****"

    @pytest.mark.unit
    @h_settings(max_examples=50)
    @given(st.sampled_from(["07", "01"]), st.text(alphabet="0123456789", min_size=8, max_size=8))
    def test_local_and_international_agree(self, prefix: str, rest: str):
        """כל מספר מקומי תקין מתנרמל לאותה צורה כמו הגרסה הבינלאומית שלו"""
        local = prefix + rest
        international = "254" + local[1:]
        assert PhoneNumberValidator.normalize(local) == PhoneNumberValidator.normalize(international)
        assert PhoneNumberValidator.normalize(local) == international


class TestAmountValidator:
    """Decimal amounts, never float"""

    @pytest.mark.unit
    @pytest.mark.parametrize("amount,valid", [
        (Decimal("1"), True),
        (Decimal("500.00"), True),
        (Decimal("999999.99"), True),
        (Decimal("0"), False),
        (Decimal("-10"), False),
        (Decimal("0.50"), False),
        (Decimal("1000000"), False),
        (Decimal("10.001"), False),
        (Decimal("NaN"), False),
        (Decimal("Infinity"), False),
    ])
    def test_validate(self, amount: Decimal, valid: bool):
        is_valid, error = AmountValidator.validate(amount)
        assert is_valid is valid
        assert (error is None) is valid

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        (500, Decimal("500.00")),
        ("750.5", Decimal("750.50")),
        (1.1, Decimal("1.10")),
        ("0.005", Decimal("0.01")),
    ])
    def test_to_decimal(self, raw, expected: Decimal):
        assert AmountValidator.to_decimal(raw) == expected

    @pytest.mark.unit
    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValueError):
            AmountValidator.to_decimal("five hundred")

    @pytest.mark.unit
    def test_amount_validator_raises(self):
        assert amount_validator(Decimal("10.50")) == Decimal("10.50")
        with pytest.raises(ValueError):
            amount_validator(Decimal("0"))


class TestTextSanitizer:

    @pytest.mark.unit
    def test_sanitize_strips_control_characters(self):
        assert TextSanitizer.sanitize("  Order\x00  #42\n ") == "Order #42"

    @pytest.mark.unit
    def test_sanitize_truncates(self):
        assert TextSanitizer.sanitize("x" * 300, max_length=20) == "x" * 20

    @pytest.mark.unit
    @pytest.mark.parametrize("text", ["<script>alert(1)</script>", "javascript:void(0)", "<img onerror=x>"])
    def test_injection_rejected(self, text: str):
        is_safe, reason = TextSanitizer.check_for_injection(text)
        assert not is_safe
        with pytest.raises(ValueError):
            sanitized_text_validator(text)

    @pytest.mark.unit
    def test_blank_description_becomes_none(self):
        assert sanitized_text_validator("   ") is None
        assert sanitized_text_validator(None) is None


class TestFieldValidators:

    @pytest.mark.unit
    @pytest.mark.parametrize("account", ["0170123456789", "ACME-001"])
    def test_account_number_ok(self, account: str):
        assert account_number_validator(f" {account} ") == account

    @pytest.mark.unit
    @pytest.mark.parametrize("account", ["123", "acct 12345", "x" * 33, "12;DROP"])
    def test_account_number_rejected(self, account: str):
        with pytest.raises(ValueError):
            account_number_validator(account)

    @pytest.mark.unit
    @pytest.mark.parametrize("url", ["https://merchant.example.com/hooks", "http://localhost:8080/cb"])
    def test_webhook_url_ok(self, url: str):
        assert webhook_url_validator(url) == url

    @pytest.mark.unit
    @pytest.mark.parametrize("url", ["ftp://merchant.example.com", "not a url", "https://", "/relative/path"])
    def test_webhook_url_rejected(self, url: str):
        with pytest.raises(ValueError):
            webhook_url_validator(url)
