import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_MODE = os.getenv("STRIPE_MODE")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
# Pins the customer for DEMO_CUSTOMER_EMAIL, skipping the search
STRIPE_CUSTOMER_ID = os.getenv("STRIPE_CUSTOMER_ID")
DEMO_CUSTOMER_EMAIL = os.getenv("DEMO_CUSTOMER_EMAIL", "demo@example.com")

CORS_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()
]

JWT_SECRET = os.getenv("JWT_SECRET")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
MAX_SAVED_CARDS = int(os.getenv("MAX_SAVED_CARDS", "3"))

PLACEHOLDER_SECRET_KEY = "sk_test_your_stripe_secret_key_here"


def stripe_configured(secret_key=None, mode=None) -> bool:
    """True when a usable live key is present and demo mode is not forced."""
    secret_key = STRIPE_SECRET_KEY if secret_key is None else secret_key
    mode = STRIPE_MODE if mode is None else mode
    if mode == "demo":
        return False
    return bool(secret_key) and secret_key != PLACEHOLDER_SECRET_KEY and secret_key.startswith("sk_")


def safe_config() -> dict:
    """Effective configuration for the startup log, secrets redacted."""
    return {
        "DATABASE_URL": DATABASE_URL.split("@")[-1] if DATABASE_URL else "<unset>",
        "STRIPE_SECRET_KEY": "<redacted>" if STRIPE_SECRET_KEY else "<unset>",
        "STRIPE_MODE": STRIPE_MODE or "<unset>",
        "DEMO_CUSTOMER_EMAIL": DEMO_CUSTOMER_EMAIL,
        "CORS_ORIGINS": CORS_ORIGINS,
        "MAX_SAVED_CARDS": MAX_SAVED_CARDS,
        "gateway": "stripe" if stripe_configured() else "demo",
    }
