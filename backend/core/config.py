import os
from decimal import Decimal
from typing import List, Literal
from dotenv import load_dotenv
import logging


logger = logging.getLogger(__name__)

# Load environment variables from .env file located in the backend directory.
# Environment variables explicitly set (e.g., by Docker Compose) take precedence.
BASE_DIR = os.path.dirname(os.path.dirname(__file__))
ENV_PATH = os.path.join(BASE_DIR, '.env')
load_dotenv(ENV_PATH)


def parse_cors(value: str) -> List[str]:
    """
    Parses CORS origins. Accepts comma-separated string or list-like string.
    Example: "http://localhost,http://127.0.0.1" → ["http://localhost", "http://127.0.0.1"]
    """
    if not value:
        return [
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:3000",
        ]
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        return [i.strip().strip('"').strip("'") for i in value[1:-1].split(",")]
    return [i.strip() for i in value.split(",")]


def _as_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings read from the environment at construction time."""

    def __init__(self):
        # --- General Environment Settings ---
        self.ENVIRONMENT: Literal["local", "staging", "production", "test"] = os.getenv('ENVIRONMENT', 'local')
        self.LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')
        self.API_PREFIX: str = os.getenv('API_PREFIX', '/v1')

        # --- PostgreSQL Database Configuration ---
        # Defaults are set for local Docker Compose setup.
        self.POSTGRES_USER: str = os.getenv('POSTGRES_USER', 'store')
        self.POSTGRES_PASSWORD: str = os.getenv('POSTGRES_PASSWORD', 'store_password')
        self.POSTGRES_SERVER: str = os.getenv('POSTGRES_SERVER', 'postgres')
        self.POSTGRES_PORT: int = int(os.getenv('POSTGRES_PORT', 5432))
        self.POSTGRES_DB: str = os.getenv('POSTGRES_DB', 'store_db')
        # Full database URL takes precedence when set
        self.POSTGRES_DB_URL: str = os.getenv('POSTGRES_DB_URL', "")
        # No migration tooling ships with the service; tables are created at startup when enabled
        self.DB_CREATE_ALL: bool = _as_bool(os.getenv('DB_CREATE_ALL', str(self.ENVIRONMENT == 'local')))

        # --- Security Settings ---
        self.SECRET_KEY: str = os.getenv('SECRET_KEY', '')
        self.ALGORITHM: str = os.getenv('ALGORITHM', "HS256")
        self.ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', 60))
        self.RAW_CORS_ORIGINS: str = os.getenv('BACKEND_CORS_ORIGINS', '')
        self.BACKEND_CORS_ORIGINS: List[str] = parse_cors(self.RAW_CORS_ORIGINS)

        # --- Stripe ---
        self.STRIPE_SECRET_KEY: str = os.getenv('STRIPE_SECRET_KEY', '')
        self.STRIPE_WEBHOOK_SECRET: str = os.getenv('STRIPE_WEBHOOK_SECRET', '')
        self.STRIPE_CURRENCY: str = os.getenv('STRIPE_CURRENCY', 'usd')

        # --- Shippo ---
        self.SHIPPO_API_TOKEN: str = os.getenv('SHIPPO_API_TOKEN', '')
        self.SHIPPO_API_URL: str = os.getenv('SHIPPO_API_URL', 'https://api.goshippo.com')
        self.SHIPPO_API_VERSION: str = os.getenv('SHIPPO_API_VERSION', '2018-02-08')
        self.SHIPPO_TIMEOUT_SECONDS: float = float(os.getenv('SHIPPO_TIMEOUT_SECONDS', 30))
        # A QUEUED label is re-fetched this many times, this far apart, before we settle for partial data
        self.SHIPPO_QUEUED_RETRY_DELAY_SECONDS: float = float(os.getenv('SHIPPO_QUEUED_RETRY_DELAY_SECONDS', 3.0))
        self.SHIPPO_QUEUED_MAX_ATTEMPTS: int = int(os.getenv('SHIPPO_QUEUED_MAX_ATTEMPTS', 1))

        # --- Label origin (warehouse) address ---
        self.SENDER_NAME: str = os.getenv('SENDER_NAME', 'Southern Sweet and Sour')
        self.SENDER_COMPANY: str = os.getenv('SENDER_COMPANY', 'Southern Sweet and Sour LLC')
        self.SENDER_EMAIL: str = os.getenv('SENDER_EMAIL', 'info@southernsweetandsour.com')
        self.SENDER_PHONE: str = os.getenv('SENDER_PHONE', '+1 919-701-9321')
        self.SENDER_STREET1: str = os.getenv('SENDER_STREET1', '4363 Ocean Farm Dr')
        self.SENDER_CITY: str = os.getenv('SENDER_CITY', 'Summerville')
        self.SENDER_STATE: str = os.getenv('SENDER_STATE', 'SC')
        self.SENDER_ZIP: str = os.getenv('SENDER_ZIP', '29485')
        self.SENDER_COUNTRY: str = os.getenv('SENDER_COUNTRY', 'US')

        # --- Mailgun Configuration ---
        # An empty API key disables outbound email (messages are logged instead)
        self.MAILGUN_API_KEY: str = os.getenv('MAILGUN_API_KEY', '')
        self.MAILGUN_DOMAIN: str = os.getenv('MAILGUN_DOMAIN', '')
        self.MAILGUN_FROM_EMAIL: str = os.getenv('MAILGUN_FROM_EMAIL', 'Southern Sweet and Sour <noreply@southernsweetandsour.com>')

        # --- Frontend URL ---
        self.FRONTEND_URL: str = os.getenv('FRONTEND_URL', 'http://localhost:5173')

        # --- Checkout pricing ---
        self.FREE_SHIPPING_THRESHOLD: Decimal = Decimal(os.getenv('FREE_SHIPPING_THRESHOLD', '50'))
        self.FLAT_SHIPPING_RATE: Decimal = Decimal(os.getenv('FLAT_SHIPPING_RATE', '5.99'))
        self.TAX_RATE: Decimal = Decimal(os.getenv('TAX_RATE', '0.08'))

        # Checkout attempts when the transaction loses a lock race to another checkout
        self.CHECKOUT_MAX_ATTEMPTS: int = int(os.getenv('CHECKOUT_MAX_ATTEMPTS', 5))
        self.CHECKOUT_RETRY_DELAY_SECONDS: float = float(os.getenv('CHECKOUT_RETRY_DELAY_SECONDS', 0.05))

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        override = os.getenv('SQLALCHEMY_DATABASE_URI')
        if override:
            return override
        if self.POSTGRES_DB_URL:
            return self.POSTGRES_DB_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def sender_address(self) -> dict:
        return {
            "name": self.SENDER_NAME,
            "company": self.SENDER_COMPANY,
            "email": self.SENDER_EMAIL,
            "phone": self.SENDER_PHONE,
            "street1": self.SENDER_STREET1,
            "street2": "",
            "city": self.SENDER_CITY,
            "state": self.SENDER_STATE,
            "zip": self.SENDER_ZIP,
            "country": self.SENDER_COUNTRY,
        }

    def validate(self) -> List[str]:
        """Return a list of warnings for settings that leave a feature disabled."""
        warnings = []
        if not self.SECRET_KEY:
            warnings.append("SECRET_KEY is not set; authenticated endpoints will reject every token")
        if not self.STRIPE_SECRET_KEY:
            warnings.append("STRIPE_SECRET_KEY is not set; payment intents cannot be created")
        if not self.STRIPE_WEBHOOK_SECRET:
            warnings.append("STRIPE_WEBHOOK_SECRET is not set; payment webhooks will be rejected")
        if not self.SHIPPO_API_TOKEN:
            warnings.append("SHIPPO_API_TOKEN is not set; labels and rates are unavailable")
        if not self.MAILGUN_API_KEY:
            warnings.append("MAILGUN_API_KEY is not set; emails will only be logged")
        return warnings


settings = Settings()
