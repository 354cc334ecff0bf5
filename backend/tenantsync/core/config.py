# tenantsync/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            # Load .env only for non-prod so prod can't be accidentally influenced by local files.
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        # DATABASE_URL wins when set (tests, local sqlite, managed connection strings).
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()

        # Secondary analytical store; defaults to the primary database.
        self.ANALYTICS_DATABASE_URL = os.getenv("ANALYTICS_DATABASE_URL", "").strip()

        # ----------------------------
        # Workers / internal access
        # ----------------------------
        self.CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "").strip()
        self.INTERNAL_API_TOKEN = os.getenv("INTERNAL_API_TOKEN", "")

        # ----------------------------
        # Identity provider (WorkOS)
        # ----------------------------
        self.WORKOS_API_KEY = os.getenv("WORKOS_API_KEY", "")
        self.WORKOS_API_BASE_URL = os.getenv("WORKOS_API_BASE_URL", "https://api.workos.com").strip().rstrip("/")
        self.WORKOS_HTTP_TIMEOUT_SECONDS = float(os.getenv("WORKOS_HTTP_TIMEOUT_SECONDS", "10"))

        # One secret per webhook category so a leaked secret can't forge the other categories.
        self.WORKOS_WEBHOOK_USERS_SECRET = os.getenv("WORKOS_WEBHOOK_USERS_SECRET", "")
        self.WORKOS_WEBHOOK_ORGANIZATIONS_SECRET = os.getenv("WORKOS_WEBHOOK_ORGANIZATIONS_SECRET", "")
        self.WORKOS_WEBHOOK_MEMBERSHIPS_SECRET = os.getenv("WORKOS_WEBHOOK_MEMBERSHIPS_SECRET", "")
        self.WORKOS_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WORKOS_WEBHOOK_TOLERANCE_SECONDS", "180"))

        # ----------------------------
        # Stripe
        # ----------------------------
        self.STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
        self.STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.STRIPE_PRICE_PERSONAL_MONTHLY = os.getenv("STRIPE_PRICE_PERSONAL_MONTHLY", "")
        self.STRIPE_PRICE_PERSONAL_YEARLY = os.getenv("STRIPE_PRICE_PERSONAL_YEARLY", "")
        self.STRIPE_PRICE_PRO_MONTHLY = os.getenv("STRIPE_PRICE_PRO_MONTHLY", "")
        self.STRIPE_PRICE_PRO_YEARLY = os.getenv("STRIPE_PRICE_PRO_YEARLY", "")
        self.STRIPE_PRICE_ENTERPRISE_MONTHLY = os.getenv("STRIPE_PRICE_ENTERPRISE_MONTHLY", "")
        self.STRIPE_PRICE_ENTERPRISE_YEARLY = os.getenv("STRIPE_PRICE_ENTERPRISE_YEARLY", "")

        # ----------------------------
        # Event polling / retention
        # ----------------------------
        self.EVENTS_POLL_INTERVAL_SECONDS = int(os.getenv("EVENTS_POLL_INTERVAL_SECONDS", "60"))
        self.EVENTS_POLL_PAGE_SIZE = int(os.getenv("EVENTS_POLL_PAGE_SIZE", "100"))
        self.EVENTS_POLL_RANGE_START = os.getenv("EVENTS_POLL_RANGE_START", "").strip() or None
        self.PROCESSED_EVENTS_RETENTION_DAYS = int(os.getenv("PROCESSED_EVENTS_RETENTION_DAYS", "30"))
        self.PROCESSED_EVENTS_CLEANUP_BATCH_SIZE = int(os.getenv("PROCESSED_EVENTS_CLEANUP_BATCH_SIZE", "500"))
        self.PROCESSED_EVENTS_CLEANUP_INTERVAL_SECONDS = int(
            os.getenv("PROCESSED_EVENTS_CLEANUP_INTERVAL_SECONDS", str(24 * 60 * 60))
        )

        # ----------------------------
        # Cross-system sync retry policy
        # ----------------------------
        self.SYNC_MAX_RETRIES = int(os.getenv("SYNC_MAX_RETRIES", "5"))
        self.SYNC_INITIAL_DELAY_SECONDS = float(os.getenv("SYNC_INITIAL_DELAY_SECONDS", "2"))
        self.SYNC_MAX_DELAY_SECONDS = float(os.getenv("SYNC_MAX_DELAY_SECONDS", "30"))

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        required = [
            "INTERNAL_API_TOKEN",
            "CELERY_BROKER_URL",
            "WORKOS_API_KEY",
            "WORKOS_WEBHOOK_USERS_SECRET",
            "WORKOS_WEBHOOK_ORGANIZATIONS_SECRET",
            "WORKOS_WEBHOOK_MEMBERSHIPS_SECRET",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
        ]
        missing.extend(name for name in required if not getattr(self, name))

        if not self.WORKOS_API_BASE_URL.startswith("https://"):
            raise RuntimeError("WORKOS_API_BASE_URL should be https://... in prod")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    @property
    def is_prod(self) -> bool:
        return self.ENV == "prod"

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)

    @property
    def analytics_database_url(self) -> str:
        return self.ANALYTICS_DATABASE_URL or self.database_url

    def webhook_secret_for(self, category: str) -> str:
        return {
            "users": self.WORKOS_WEBHOOK_USERS_SECRET,
            "organizations": self.WORKOS_WEBHOOK_ORGANIZATIONS_SECRET,
            "memberships": self.WORKOS_WEBHOOK_MEMBERSHIPS_SECRET,
        }.get(category, "")

    def stripe_price_ids(self) -> dict[str, tuple[str, str]]:
        """Map configured price ids to (tier, billing interval)."""
        table = {
            self.STRIPE_PRICE_PERSONAL_MONTHLY: ("personal", "month"),
            self.STRIPE_PRICE_PERSONAL_YEARLY: ("personal", "year"),
            self.STRIPE_PRICE_PRO_MONTHLY: ("pro", "month"),
            self.STRIPE_PRICE_PRO_YEARLY: ("pro", "year"),
            self.STRIPE_PRICE_ENTERPRISE_MONTHLY: ("enterprise", "month"),
            self.STRIPE_PRICE_ENTERPRISE_YEARLY: ("enterprise", "year"),
        }
        table.pop("", None)
        return table


settings = Settings()
