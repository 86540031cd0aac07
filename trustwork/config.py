# trustwork/config.py
import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

def _as_bool(val: str | None, default=False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}

def _as_decimal(val: str | None, default: str) -> Decimal:
    return Decimal(str(val).strip() if val not in (None, "") else default)

def _as_list(val: str | None, default: str) -> list[str]:
    raw = val if val not in (None, "") else default
    return [p.strip() for p in raw.split(",") if p.strip()]

def _as_counts(val: str | None, default: str) -> dict[str, int]:
    # "entry=5,mid=10,senior=15"
    out = {}
    for pair in _as_list(val, default):
        key, _, num = pair.partition("=")
        out[key.strip()] = int(num)
    return out

class Config:
    # --- Core ---
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
    APP_VERSION = os.getenv("APP_VERSION")
    AUTH_TOKEN_SALT = os.getenv("AUTH_TOKEN_SALT", "trustwork-principal")
    AUTH_TOKEN_MAX_AGE = int(os.getenv("AUTH_TOKEN_MAX_AGE", str(60 * 60 * 24)))

    # DB
    SQLALCHEMY_DATABASE_URI = (
        os.getenv("SQLALCHEMY_DATABASE_URI")
        or os.getenv("DATABASE_URL")
        or "sqlite:///trustwork.db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- Engine policy ---
    PLATFORM_FEE_RATE = _as_decimal(os.getenv("PLATFORM_FEE_RATE"), "0.10")
    REVIEW_WINDOW_DAYS = int(os.getenv("REVIEW_WINDOW_DAYS", "30"))
    REVIEW_TEXT_MIN_LENGTH = int(os.getenv("REVIEW_TEXT_MIN_LENGTH", "100"))
    REVIEW_TEXT_MAX_LENGTH = int(os.getenv("REVIEW_TEXT_MAX_LENGTH", "500"))
    DISPUTE_RESPONSE_DAYS = int(os.getenv("DISPUTE_RESPONSE_DAYS", "7"))
    SKILL_TEST_COOLDOWN_DAYS = int(os.getenv("SKILL_TEST_COOLDOWN_DAYS", "7"))
    SKILL_TEST_PASSING_SCORE = int(os.getenv("SKILL_TEST_PASSING_SCORE", "70"))
    SKILL_TEST_TIME_LIMIT_MINUTES = int(os.getenv("SKILL_TEST_TIME_LIMIT_MINUTES", "40"))
    SKILL_TEST_GRACE_SECONDS = int(os.getenv("SKILL_TEST_GRACE_SECONDS", "60"))
    SKILL_TEST_QUESTION_COUNTS = _as_counts(
        os.getenv("SKILL_TEST_QUESTION_COUNTS"), "entry=5,mid=10,senior=15"
    )
    MAX_REVISIONS_PER_MILESTONE = int(os.getenv("MAX_REVISIONS_PER_MILESTONE", "3"))

    # --- Payments: gateway ---
    GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://sandbox.payfast.co.za")
    GATEWAY_MERCHANT_ID = os.getenv("GATEWAY_MERCHANT_ID")
    GATEWAY_MERCHANT_KEY = os.getenv("GATEWAY_MERCHANT_KEY")
    GATEWAY_PASSPHRASE = os.getenv("GATEWAY_PASSPHRASE", "")
    GATEWAY_SANDBOX = _as_bool(os.getenv("GATEWAY_SANDBOX", "1"))
    GATEWAY_DRY_RUN = _as_bool(os.getenv("GATEWAY_DRY_RUN", "0"))  # log commands, don't send
    GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", "20"))
    GATEWAY_MAX_RETRIES = int(os.getenv("GATEWAY_MAX_RETRIES", "3"))
    GATEWAY_BACKOFF_SECONDS = float(os.getenv("GATEWAY_BACKOFF_SECONDS", "0.5"))
    PAYOUT_MAX_RETRIES = int(os.getenv("PAYOUT_MAX_RETRIES", "5"))
    CURRENCY = os.getenv("CURRENCY", "ZAR")

    # --- Object store ---
    OBJECT_STORE_ROOT = os.getenv("OBJECT_STORE_ROOT")  # default: <instance>/objects
    OBJECT_STORE_BUCKETS = _as_list(
        os.getenv("OBJECT_STORE_BUCKETS"), "resumes,attachments,message-attachments"
    )
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(50 * 1024 * 1024)))  # 50MB
    ALLOWED_EXTENSIONS = set(_as_list(
        os.getenv("ALLOWED_EXTENSIONS"),
        "pdf,doc,docx,xls,xlsx,ppt,pptx,txt,zip,png,jpg,jpeg",
    ))

    # --- Mail ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _as_bool(os.getenv("MAIL_USE_TLS", "1"))
    MAIL_USE_SSL = _as_bool(os.getenv("MAIL_USE_SSL", "0"))  # don't enable together with TLS
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", MAIL_USERNAME)
    MAIL_SUPPRESS_SEND = _as_bool(os.getenv("MAIL_SUPPRESS_SEND", "0"))
    ADMIN_ALERT_EMAILS = _as_list(os.getenv("ADMIN_ALERT_EMAILS"), "ops@trustwork.example")

    # --- Logging ---
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_FILENAME = os.getenv("LOG_FILENAME", "trustwork.log")
    LOG_JSON = _as_bool(os.getenv("LOG_JSON", "0"))

    # --- Sentry ---
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0"))
