# agrimarket/config.py
import os
import logging
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv
from typing import List

# Load environment variables
load_dotenv()

# Base directory of the project
BASE_DIR = Path(__file__).resolve().parent.parent

class Config:
    """Configuration settings for the marketplace backend"""

    # Database settings
    DATABASE_URL: str = os.getenv("DATABASE_URL")
    if not DATABASE_URL:
        raise ValueError("No DATABASE_URL set in environment")
    DB_POOL_MIN_SIZE: int = int(os.getenv("DB_POOL_MIN_SIZE", "2"))
    DB_POOL_MAX_SIZE: int = int(os.getenv("DB_POOL_MAX_SIZE", "10"))
    DB_RETRY_ATTEMPTS: int = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_DELAY: float = float(os.getenv("DB_RETRY_DELAY", "1.0"))

    # HTTP server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "4000"))

    # Admin settings
    ADMIN_IDS: List[str] = [
        id_.strip() for id_ in os.getenv("ADMIN_IDS", "").split(",")
        if id_.strip()
    ]

    # Payment settings
    CURRENCY: str = os.getenv("CURRENCY", "RWF")
    PAYMENT_TIMEOUT: float = float(os.getenv("PAYMENT_TIMEOUT", "30"))
    BANK_TRANSFER_EXPIRY_SECONDS: int = int(os.getenv("BANK_TRANSFER_EXPIRY_SECONDS", "3600"))
    MIN_TOP_UP_AMOUNT: Decimal = Decimal(os.getenv("MIN_TOP_UP_AMOUNT", "100"))

    # Primary provider (cards, mobile money, bank transfer)
    FLW_SECRET_KEY: str = os.getenv("FLW_SECRET_KEY", "")
    FLW_BASE_URL: str = os.getenv("FLW_BASE_URL", "https://api.flutterwave.com/v3")
    FLW_SECRET_HASH: str = os.getenv("FLW_SECRET_HASH", "")

    # Fallback mobile money provider
    PAYPACK_CLIENT_ID: str = os.getenv("PAYPACK_CLIENT_ID", "")
    PAYPACK_CLIENT_SECRET: str = os.getenv("PAYPACK_CLIENT_SECRET", "")
    PAYPACK_BASE_URL: str = os.getenv("PAYPACK_BASE_URL", "https://payments.paypack.rw/api")
    PAYPACK_WEBHOOK_SECRET: str = os.getenv("PAYPACK_WEBHOOK_SECRET", "")

    # Notifications
    SMS_API_URL: str = os.getenv("SMS_API_URL", "https://api.africastalking.com/version1/messaging")
    SMS_USERNAME: str = os.getenv("SMS_USERNAME", "")
    SMS_API_KEY: str = os.getenv("SMS_API_KEY", "")
    SMS_SENDER_ID: str = os.getenv("SMS_SENDER_ID", "")
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER: str = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SMTP_FROM: str = os.getenv("SMTP_FROM", "no-reply@agrimarket.rw")

    # Other settings
    TIMEZONE: str = os.getenv("TZ", "Africa/Kigali")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Paths
    LOG_DIR = BASE_DIR / "logs"

    # Ensure directories exist
    LOG_DIR.mkdir(exist_ok=True)

def setup_logging():
    """Configure logging settings"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    log_file = Config.LOG_DIR / "agrimarket.log"

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL),
        format=log_format,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
