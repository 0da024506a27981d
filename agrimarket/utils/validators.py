# agrimarket/utils/validators.py
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID
import pytz
from ..errors import ValidationError

MOBILE_PREFIXES = ("078", "079", "072", "073")

def clean_phone_number(phone: Optional[str]) -> str:
    """Digits only, with the 2507... country form rewritten to 07..."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("2507"):
        digits = "0" + digits[3:]
    return digits

def is_valid_mobile_number(phone: Optional[str]) -> bool:
    digits = clean_phone_number(phone)
    return len(digits) == 10 and digits.startswith(MOBILE_PREFIXES)

def to_international(phone: str) -> str:
    """07XXXXXXXX -> 2507XXXXXXXX"""
    digits = clean_phone_number(phone)
    return "25" + digits if digits.startswith("0") else digits

def parse_uuid(value, field: str = "id") -> UUID:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value}")

def parse_amount(value, field: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field}: {value}")
    return amount

def parse_positive_int(value, field: str = "quantity") -> int:
    """Whole number above zero; bools and fractional floats are rejected"""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"Invalid {field}: {value}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value}")
    if number <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return number

def parse_datetime(value, field: str = "date") -> Optional[datetime]:
    """ISO 8601 date or timestamp; empty means no filter"""
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}")
    if parsed.tzinfo is None:
        parsed = pytz.utc.localize(parsed)
    return parsed

def parse_bool(value, field: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    if str(value).lower() in ("true", "1", "yes"):
        return True
    if str(value).lower() in ("false", "0", "no"):
        return False
    raise ValidationError(f"Invalid {field}: {value}")
