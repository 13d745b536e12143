import os


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class Config:
    # Base directory of the backend (one level above this `payfesa` package)
    BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    INSTANCE_DIR = os.path.join(BACKEND_DIR, "instance")

    ENV_NAME = (os.getenv("PAYFESA_ENV", "dev") or "dev").strip().lower()
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")

    _default_sqlite_path = os.path.join(INSTANCE_DIR, "payfesa.db").replace("\\", "/")
    _db_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL") or f"sqlite:///{_default_sqlite_path}"
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS: comma-separated origins for web builds
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    # Paychangu gateway
    PAYCHANGU_BASE_URL = os.getenv("PAYCHANGU_BASE_URL", "https://api.paychangu.com").rstrip("/")
    PAYCHANGU_SECRET_KEY = os.getenv("PAYCHANGU_SECRET_KEY", "").strip()
    PAYCHANGU_WEBHOOK_SECRET = os.getenv("PAYCHANGU_WEBHOOK_SECRET", "").strip()
    # Unsigned callbacks are refused in production unless explicitly allowed
    PAYCHANGU_WEBHOOK_STRICT = os.getenv(
        "PAYCHANGU_WEBHOOK_STRICT", "1" if ENV_NAME in ("prod", "production") else "0"
    ).strip() == "1"
    PAYCHANGU_TIMEOUT_SECONDS = _int_env("PAYCHANGU_TIMEOUT_SECONDS", 20)

    SETTLEMENT_CURRENCY = os.getenv("SETTLEMENT_CURRENCY", "MWK").strip() or "MWK"
    CURRENCY_EXPONENT = _int_env("CURRENCY_EXPONENT", 2)

    # Guards
    RETRY_MAX_ATTEMPTS = _int_env("RETRY_MAX_ATTEMPTS", 5)
    # Retries allowed per original settlement, across the whole retry chain
    RETRY_MAX_PER_SETTLEMENT = _int_env("RETRY_MAX_PER_SETTLEMENT", 3)
    RETRY_WINDOW_MINUTES = _int_env("RETRY_WINDOW_MINUTES", 60)
    DISPUTE_MAX_PER_WINDOW = _int_env("DISPUTE_MAX_PER_WINDOW", 10)
    DISPUTE_WINDOW_MINUTES = _int_env("DISPUTE_WINDOW_MINUTES", 60)
    DISPUTE_MIN_REASON_LENGTH = _int_env("DISPUTE_MIN_REASON_LENGTH", 10)

    # Poller: pending/processing settlements older than this are re-verified
    SETTLEMENT_STALE_SECONDS = _int_env("SETTLEMENT_STALE_SECONDS", 900)
