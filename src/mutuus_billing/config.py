"""
Central configuration module for Mutuus Billing
Reads and validates environment variables with strict checks for production
"""
import os
import sys
from decimal import Decimal
from typing import Dict, Optional

# Load environment variables from .env file if it exists (dev only)
try:
    from dotenv import load_dotenv
    if os.getenv("ENV", "dev").lower() == "dev":
        load_dotenv()
except ImportError:
    pass


class Config:
    """Central configuration class with environment variable validation"""

    VALID_ENVS = ("dev", "test", "staging", "prod")

    def __init__(self, **overrides):
        """
        Load configuration from the environment

        Args:
            overrides: Attribute values that take precedence over the environment
                (used by tests and by the app factory)
        """
        # Environment
        self.ENV: str = os.getenv("ENV", "dev").lower()

        # Database
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "")
        self.DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
        self.DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "5"))
        self.DB_POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "900"))
        self.DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.DB_STATEMENT_TIMEOUT: int = int(os.getenv("DB_STATEMENT_TIMEOUT", "10000"))

        self.PORT: int = int(os.getenv("PORT", "8000"))

        # Stripe
        self.STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")
        self.STRIPE_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.STRIPE_TEST_SECRET_KEY: Optional[str] = os.getenv("STRIPE_TEST_SECRET_KEY")
        self.STRIPE_TEST_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_TEST_WEBHOOK_SECRET")
        self.STRIPE_TIMEOUT_SECONDS: float = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "20"))
        self.STRIPE_MAX_RETRIES: int = int(os.getenv("STRIPE_MAX_RETRIES", "3"))
        self.STRIPE_RETRY_BACKOFF_SECONDS: float = float(os.getenv("STRIPE_RETRY_BACKOFF_SECONDS", "0.5"))
        self.WEBHOOK_TOLERANCE_SECONDS: int = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

        # Products
        self.PREMIUM_PRICE_ID: str = os.getenv("PREMIUM_PRICE_ID", "price_1RzfLwFUBYwTdlMckPbqoeBD")
        self.POINTS_PRICE_ID: str = os.getenv("POINTS_PRICE_ID", "price_1RzfFSFUBYwTdlMcL1q2vDFu")
        self.POINTS_PRODUCT_KEY: str = os.getenv("POINTS_PRODUCT_KEY", "points_1000")
        self.POINTS_PER_PURCHASE: int = int(os.getenv("POINTS_PER_PURCHASE", "1000"))
        self.POINTS_PURCHASE_AMOUNT: Decimal = Decimal(os.getenv("POINTS_PURCHASE_AMOUNT", "2.99"))

        # Commission
        self.COMMISSION_RATE_STANDARD: Decimal = Decimal(os.getenv("COMMISSION_RATE_STANDARD", "0.098"))
        self.COMMISSION_RATE_PREMIUM: Decimal = Decimal(os.getenv("COMMISSION_RATE_PREMIUM", "0.05"))
        self.CURRENCY: str = os.getenv("CURRENCY", "eur").lower()
        self.INVOICE_DAYS_UNTIL_DUE: int = int(os.getenv("INVOICE_DAYS_UNTIL_DUE", "14"))

        # Webhook ordering and scheduling
        self.ENFORCE_EVENT_ORDERING: bool = os.getenv("ENFORCE_EVENT_ORDERING", "true").lower() == "true"
        self.SCHEDULER_ENABLED: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

        # Logging
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown configuration key: {key}")
            setattr(self, key, value)

        self._validate()

    def _validate(self):
        """Validate required configuration based on environment"""
        errors = []

        if self.ENV not in self.VALID_ENVS:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be one of {', '.join(self.VALID_ENVS)}")

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required but not set")
        elif self.ENV in ["staging", "prod"] and not self.DATABASE_URL.startswith("postgresql"):
            errors.append(f"DATABASE_URL must be a PostgreSQL connection string in {self.ENV}")

        if self.ENV in ["staging", "prod"]:
            if not self.stripe_secret_key:
                errors.append(f"STRIPE_{'TEST_' if self.ENV == 'staging' else ''}SECRET_KEY is required in {self.ENV}")
            if not self.stripe_webhook_secret:
                errors.append(f"STRIPE_{'TEST_' if self.ENV == 'staging' else ''}WEBHOOK_SECRET is required in {self.ENV}")

        if self.COMMISSION_RATE_PREMIUM <= 0 or self.COMMISSION_RATE_STANDARD <= 0:
            errors.append("Commission rates must be positive")

        if self.STRIPE_MAX_RETRIES < 1:
            errors.append("STRIPE_MAX_RETRIES must be at least 1")

        # Fail fast in staging/prod
        if errors and self.ENV in ["staging", "prod"]:
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION VALIDATION FAILED", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            sys.exit(1)

        # Warn in dev
        if errors and self.ENV == "dev":
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION WARNINGS (dev mode - continuing)", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)

    @property
    def is_dev(self) -> bool:
        return self.ENV == "dev"

    @property
    def is_prod(self) -> bool:
        return self.ENV == "prod"

    @property
    def is_staging(self) -> bool:
        return self.ENV == "staging"

    @property
    def stripe_secret_key(self) -> Optional[str]:
        """Secret key for the current environment (test keys outside prod)"""
        if self.ENV == "prod":
            return self.STRIPE_SECRET_KEY
        return self.STRIPE_TEST_SECRET_KEY or self.STRIPE_SECRET_KEY

    @property
    def stripe_webhook_secret(self) -> Optional[str]:
        """Webhook signing secret for the current environment"""
        if self.ENV == "prod":
            return self.STRIPE_WEBHOOK_SECRET
        return self.STRIPE_TEST_WEBHOOK_SECRET or self.STRIPE_WEBHOOK_SECRET

    @property
    def points_packages(self) -> Dict[str, Dict]:
        """Purchasable points packages keyed by product key"""
        return {
            self.POINTS_PRODUCT_KEY: {
                "price_id": self.POINTS_PRICE_ID,
                "points": self.POINTS_PER_PURCHASE,
                "amount": self.POINTS_PURCHASE_AMOUNT,
            }
        }


# Create global config instance
config = Config()
