import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _env_int_list(name, default):
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [int(part) for part in raw.split(",") if part.strip()]


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Upstream platform (Tookan) ---
    TOOKAN_API_KEY = os.environ.get("TOOKAN_API_KEY")
    TOOKAN_API_BASE_URL = os.environ.get(
        "TOOKAN_API_BASE_URL", "https://api.tookanapp.com/v2"
    )
    TOOKAN_API_TIMEOUT = int(os.environ.get("TOOKAN_API_TIMEOUT", 15))

    # --- Webhook ingress ---
    # Unset disables X-Webhook-Signature verification.
    WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET")

    # --- Retry scheduler ---
    WEBHOOK_MAX_RETRIES = int(os.environ.get("WEBHOOK_MAX_RETRIES", 3))
    WEBHOOK_RETRY_BASE_SECONDS = int(os.environ.get("WEBHOOK_RETRY_BASE_SECONDS", 60))
    WEBHOOK_RETRY_MAX_SECONDS = int(os.environ.get("WEBHOOK_RETRY_MAX_SECONDS", 3600))
    WEBHOOK_BATCH_SIZE = int(os.environ.get("WEBHOOK_BATCH_SIZE", 100))
    WEBHOOK_SWEEP_INTERVAL_SECONDS = int(
        os.environ.get("WEBHOOK_SWEEP_INTERVAL_SECONDS", 300)
    )
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS = int(
        os.environ.get("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", 900)
    )
    WEBHOOK_SCHEDULER_ENABLED = _env_flag("WEBHOOK_SCHEDULER_ENABLED")
    WEBHOOK_PROCESS_ON_RECEIPT = _env_flag("WEBHOOK_PROCESS_ON_RECEIPT")

    # --- COD / settlement ---
    # Upstream job_status 2 = Successful
    COD_COMPLETED_STATUSES = _env_int_list("COD_COMPLETED_STATUSES", [2])
    SETTLEMENT_LOCK_TABLE_SIZE = int(os.environ.get("SETTLEMENT_LOCK_TABLE_SIZE", 1024))
    RECONCILIATION_ALERT_HOURS = int(os.environ.get("RECONCILIATION_ALERT_HOURS", 24))
    # driver_credited attempts older than this are listed for reconciliation
    SETTLEMENT_STUCK_SECONDS = int(os.environ.get("SETTLEMENT_STUCK_SECONDS", 900))

    # --- Operator API ---
    OPERATOR_API_KEY = os.environ.get("OPERATOR_API_KEY")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "TOOKAN_API_KEY",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled, no background threads."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    TOOKAN_API_KEY = "tookan_test_fake"
    TOOKAN_API_BASE_URL = "https://tookan.test/v2"
    WEBHOOK_SECRET = None  # enabled per-test where signatures are exercised
    OPERATOR_API_KEY = "operator-test-key"
    WEBHOOK_MAX_RETRIES = 3
    WEBHOOK_RETRY_BASE_SECONDS = 60
    WEBHOOK_RETRY_MAX_SECONDS = 3600
    WEBHOOK_SCHEDULER_ENABLED = False
    WEBHOOK_PROCESS_ON_RECEIPT = False
    COD_COMPLETED_STATUSES = [2]
    SETTLEMENT_STUCK_SECONDS = 900
    WTF_CSRF_ENABLED = False  # disable CSRF for test forms
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production on Railway."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
