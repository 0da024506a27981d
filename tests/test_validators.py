"""Tests for input validators and parsers."""

from decimal import Decimal
from uuid import uuid4

import pytest

from agrimarket.errors import ValidationError
from agrimarket.utils.validators import (
    clean_phone_number,
    is_valid_mobile_number,
    parse_amount,
    parse_bool,
    parse_datetime,
    parse_positive_int,
    parse_uuid,
    to_international,
)


class TestPhoneNumbers:
    @pytest.mark.parametrize("raw,expected", [
        ("0788123456", "0788123456"),
        ("078 812 3456", "0788123456"),
        ("+250788123456", "0788123456"),
        ("250788123456", "0788123456"),
        ("", ""),
        (None, ""),
    ])
    def test_clean(self, raw, expected):
        assert clean_phone_number(raw) == expected

    @pytest.mark.parametrize("phone", ["0788123456", "0791234567", "0721234567", "+250731234567"])
    def test_valid(self, phone):
        assert is_valid_mobile_number(phone)

    @pytest.mark.parametrize("phone", ["0748123456", "078812345", "07881234567", "abc", None])
    def test_invalid(self, phone):
        assert not is_valid_mobile_number(phone)

    def test_to_international(self):
        assert to_international("0788123456") == "250788123456"
        assert to_international("+250788123456") == "250788123456"


class TestParsers:
    def test_parse_uuid(self):
        value = uuid4()
        assert parse_uuid(str(value)) == value
        assert parse_uuid(value) is value
        with pytest.raises(ValidationError):
            parse_uuid("not-a-uuid", "cart_id")

    def test_parse_amount(self):
        assert parse_amount("1500.50") == Decimal("1500.50")
        assert parse_amount(200) == Decimal("200")
        for bad in ("abc", None, "NaN", "Infinity"):
            with pytest.raises(ValidationError):
                parse_amount(bad)

    def test_parse_positive_int(self):
        assert parse_positive_int("3") == 3
        assert parse_positive_int(4) == 4
        assert parse_positive_int(2.0) == 2
        for bad in (0, -1, "x", None, 2.7, "2.7", True, float("nan")):
            with pytest.raises(ValidationError):
                parse_positive_int(bad)

    def test_parse_datetime(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None
        parsed = parse_datetime("2024-05-01")
        assert parsed.year == 2024 and parsed.tzinfo is not None
        with pytest.raises(ValidationError):
            parse_datetime("yesterday")

    def test_parse_bool(self):
        assert parse_bool(True) is True
        assert parse_bool("false") is False
        assert parse_bool("1") is True
        with pytest.raises(ValidationError):
            parse_bool("maybe")
