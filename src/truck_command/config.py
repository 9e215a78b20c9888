"""
Central configuration module for Truck Command
Reads and validates environment variables with strict checks for production
"""
import os
import sys
from typing import Optional, List

# Load environment variables from .env file if it exists (dev only)
from dotenv import load_dotenv

if os.getenv("ENV", "dev").lower() == "dev":
    load_dotenv()


class Config:
    """Central configuration class with environment variable validation"""

    # Environment
    ENV: str = os.getenv("ENV", "dev").lower()

    # Required for all environments
    SECRET_KEY: str = os.getenv("SECRET_KEY", "")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    PORT: int = int(os.getenv("PORT", "8000"))

    # Public URLs
    APP_URL: str = os.getenv("APP_URL", os.getenv("NEXT_PUBLIC_SITE_URL", "http://localhost:3000"))
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000")

    # CORS
    CORS_ORIGINS: List[str] = []

    # Database pool
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    DB_POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "900"))
    DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))

    # Payment provider - Stripe
    STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_PUBLIC_KEY: Optional[str] = os.getenv("STRIPE_PUBLIC_KEY")
    STRIPE_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_RETENTION_COUPON_ID: str = os.getenv("STRIPE_RETENTION_COUPON_ID", "b6hLazaO")

    # ELD provider - Terminal
    TERMINAL_SECRET_KEY: Optional[str] = os.getenv("TERMINAL_SECRET_KEY")
    TERMINAL_PUBLISHABLE_KEY: Optional[str] = os.getenv("TERMINAL_PUBLISHABLE_KEY")
    TERMINAL_API_URL: str = os.getenv("TERMINAL_API_URL", "https://api.withterminal.com/tsp/v1")
    TERMINAL_WEBHOOK_SECRET: Optional[str] = os.getenv("TERMINAL_WEBHOOK_SECRET")

    # QuickBooks Online
    QUICKBOOKS_CLIENT_ID: Optional[str] = os.getenv("QUICKBOOKS_CLIENT_ID")
    QUICKBOOKS_CLIENT_SECRET: Optional[str] = os.getenv("QUICKBOOKS_CLIENT_SECRET")
    QUICKBOOKS_REDIRECT_URI: Optional[str] = os.getenv("QUICKBOOKS_REDIRECT_URI")
    QUICKBOOKS_ENVIRONMENT: str = os.getenv("QUICKBOOKS_ENVIRONMENT", "sandbox").lower()

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = os.getenv("RESEND_API_KEY")
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "Truck Command <notifications@truckcommand.app>")

    # SMS (Twilio)
    TWILIO_ACCOUNT_SID: Optional[str] = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN: Optional[str] = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_PHONE_NUMBER: Optional[str] = os.getenv("TWILIO_PHONE_NUMBER")

    # Cron endpoints
    CRON_SECRET: Optional[str] = os.getenv("CRON_SECRET")

    # Build version (set during build/deploy)
    BUILD_VERSION: str = os.getenv("BUILD_VERSION", "dev")
    BUILD_COMMIT: str = os.getenv("BUILD_COMMIT", "unknown")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    def __init__(self):
        """Initialize configuration and validate required variables"""
        self._load_cors_origins()
        self._validate()

    def _load_cors_origins(self):
        """Load CORS origins from environment variable"""
        # Default origins for development
        default_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

        cors_env = os.getenv("CORS_ORIGINS", "")
        if cors_env:
            env_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
            self.CORS_ORIGINS = default_origins + env_origins
        else:
            self.CORS_ORIGINS = default_origins

    def _validate(self):
        """Validate required configuration based on environment"""
        errors = []

        if self.ENV not in ["dev", "test", "staging", "prod"]:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be 'dev', 'test', 'staging', or 'prod'")

        # SECRET_KEY is required for all environments
        if not self.SECRET_KEY:
            errors.append("SECRET_KEY is required but not set")
        elif len(self.SECRET_KEY) < 32:
            errors.append(f"SECRET_KEY must be at least 32 characters (current: {len(self.SECRET_KEY)})")

        # PostgreSQL in staging/prod, SQLite tolerated locally
        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required but not set")
        elif not self.DATABASE_URL.startswith("postgresql"):
            if self.ENV in ["staging", "prod"]:
                errors.append(f"DATABASE_URL must be a PostgreSQL connection string (got: {self.DATABASE_URL[:30]}...)")
            elif not self.DATABASE_URL.startswith("sqlite"):
                errors.append(f"Unsupported DATABASE_URL scheme: {self.DATABASE_URL[:30]}...")

        if self.ENV in ["staging", "prod"]:
            if self.STRIPE_SECRET_KEY and not self.STRIPE_WEBHOOK_SECRET:
                errors.append(f"STRIPE_WEBHOOK_SECRET is required when Stripe is configured in {self.ENV}")
            if not self.CRON_SECRET:
                errors.append(f"CRON_SECRET is required in {self.ENV}")
            if not self.APP_URL.startswith("https://"):
                errors.append("APP_URL must use HTTPS in staging/production")
            if not self.CORS_ORIGINS or all(not origin.startswith("https://") for origin in self.CORS_ORIGINS):
                errors.append("CORS_ORIGINS must include HTTPS origins in staging/production")

        if self.QUICKBOOKS_ENVIRONMENT not in ["sandbox", "production"]:
            errors.append(f"QUICKBOOKS_ENVIRONMENT must be 'sandbox' or 'production' (got: {self.QUICKBOOKS_ENVIRONMENT})")

        # Fail fast in staging/prod
        if errors and self.ENV in ["staging", "prod"]:
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION VALIDATION FAILED", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  ❌ {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            sys.exit(1)

        # Warn in dev
        if errors and self.ENV == "dev":
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION WARNINGS (dev mode - continuing)", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  ⚠️  {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)

    @property
    def is_dev(self) -> bool:
        """Check if running in development mode"""
        return self.ENV == "dev"

    @property
    def is_test(self) -> bool:
        return self.ENV == "test"

    @property
    def is_prod(self) -> bool:
        """Check if running in production mode"""
        return self.ENV == "prod"

    @property
    def is_staging(self) -> bool:
        """Check if running in staging mode"""
        return self.ENV == "staging"

    def get_stripe_price_id(self, plan: str, billing_cycle: str) -> Optional[str]:
        """Look up STRIPE_{PLAN}_{CYCLE}_PRICE_ID"""
        return os.getenv(f"STRIPE_{plan.upper()}_{billing_cycle.upper()}_PRICE_ID")


# Create global config instance
config = Config()
