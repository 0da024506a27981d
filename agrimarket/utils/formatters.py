# agrimarket/utils/formatters.py
from datetime import datetime
import pytz
from decimal import Decimal
from typing import Optional
from ..config import Config

def format_price(amount: Decimal, currency: Optional[str] = None) -> str:
    """Format an amount for messages, e.g. ``2,500 RWF``"""
    return f"{amount:,.0f} {currency or Config.CURRENCY}"

def format_datetime(dt: datetime) -> str:
    """Render a timestamp in the marketplace timezone"""
    local_tz = pytz.timezone(Config.TIMEZONE)
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    local_time = dt.astimezone(local_tz)
    return local_time.strftime("%Y-%m-%d %H:%M")

def local_now() -> datetime:
    return datetime.now(pytz.timezone(Config.TIMEZONE))

def utc_now() -> datetime:
    return datetime.now(pytz.utc)
