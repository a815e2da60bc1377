import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


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

    # Fernet key used to encrypt OAuth tokens at rest
    TOKEN_ENCRYPTION_KEY = os.environ.get("TOKEN_ENCRYPTION_KEY")

    # --- Mercado Pago (marketplace / OAuth) ---
    MP_CLIENT_ID = os.environ.get("MP_CLIENT_ID")
    MP_CLIENT_SECRET = os.environ.get("MP_CLIENT_SECRET")
    MP_PLATFORM_ACCESS_TOKEN = os.environ.get("MP_PLATFORM_ACCESS_TOKEN")
    MP_WEBHOOK_SECRET = os.environ.get("MP_WEBHOOK_SECRET")
    MP_API_BASE_URL = os.environ.get("MP_API_BASE_URL", "https://api.mercadopago.com")
    MP_TOKEN_URL = os.environ.get("MP_TOKEN_URL", "https://api.mercadopago.com/oauth/token")
    # Diagnostics only. Never enable in production.
    MP_WEBHOOK_DISABLE_SIGNATURE_VALIDATION = _env_flag(
        "MP_WEBHOOK_DISABLE_SIGNATURE_VALIDATION"
    )

    # --- Stripe (Connect destination charges) ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # --- Outbound provider calls ---
    PROVIDER_HTTP_TIMEOUT = float(os.environ.get("PROVIDER_HTTP_TIMEOUT", 15))

    # --- Credential manager ---
    TOKEN_REFRESH_THRESHOLD_SECONDS = int(
        os.environ.get("TOKEN_REFRESH_THRESHOLD_SECONDS", 120)
    )
    TOKEN_EXPIRY_BUFFER_SECONDS = 300
    TOKEN_MIN_LIFETIME_SECONDS = 60
    # How long a caller that lost the refresh claim waits for the winner
    TOKEN_REFRESH_WAIT_SECONDS = float(os.environ.get("TOKEN_REFRESH_WAIT_SECONDS", 10))

    # --- Refunds ---
    REFUND_TRANSIENT_RETRIES = int(os.environ.get("REFUND_TRANSIENT_RETRIES", 1))
    REFUND_RETRY_BACKOFF_SECONDS = float(os.environ.get("REFUND_RETRY_BACKOFF_SECONDS", 1))

    # --- Webhook processing ---
    # When True, business processing runs inside the request instead of a
    # background thread (used by the test suite).
    WEBHOOK_PROCESS_INLINE = False

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
            "TOKEN_ENCRYPTION_KEY",
            "MP_CLIENT_ID",
            "MP_CLIENT_SECRET",
            "MP_PLATFORM_ACCESS_TOKEN",
            "MP_WEBHOOK_SECRET",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
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
    """Testing — in-memory SQLite, CSRF disabled, inline webhook processing."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    TOKEN_ENCRYPTION_KEY = "MDEyMzQ1Njc4OTAxMjM0NTY3ODkwMTIzNDU2Nzg5MDE="
    MP_CLIENT_ID = "mp-client-test"
    MP_CLIENT_SECRET = "mp-secret-test"
    MP_PLATFORM_ACCESS_TOKEN = "APP_USR-platform-test"
    MP_WEBHOOK_SECRET = "mp_webhook_secret_test"
    MP_API_BASE_URL = "https://api.mercadopago.test"
    MP_TOKEN_URL = "https://api.mercadopago.test/oauth/token"
    MP_WEBHOOK_DISABLE_SIGNATURE_VALIDATION = False
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    TOKEN_REFRESH_WAIT_SECONDS = 0.2
    REFUND_RETRY_BACKOFF_SECONDS = 0
    WEBHOOK_PROCESS_INLINE = True
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
