import os
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "XAF")
PAYMENT_COUNTRY = os.getenv("PAYMENT_COUNTRY", "CM")

PENDING_SWEEP_MIN_AGE_MINUTES = int(os.getenv("PENDING_SWEEP_MIN_AGE_MINUTES", "15"))
PENDING_EXPIRY_HOURS = int(os.getenv("PENDING_EXPIRY_HOURS", "24"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def notify_url() -> str:
    return f"{APP_URL}/webhook"


def return_url(transaction_id: str) -> str:
    return f"{APP_URL}/payment/return?tx={transaction_id}"
