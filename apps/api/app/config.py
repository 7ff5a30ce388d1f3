from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "foodiefi-jwt-secret"
DEFAULT_STRIPE_WEBHOOK_SECRET = "whsec_foodiefi_local"
MIN_SECRET_LENGTH = 32
ALLOWED_CURRENCIES = {"inr", "usd", "eur", "gbp"}


class Settings(BaseSettings):
    app_name: str = "FoodieFi Order Engine"

    database_url: str = Field(
        default="sqlite+pysqlite:///./test.db",
        validation_alias="FOODIEFI_DATABASE_URL",
    )
    cors_allowed_origins: str = "http://localhost:3000,http://localhost:5173"

    jwt_secret: str = DEFAULT_JWT_SECRET
    allowed_roles: str = "CUSTOMER,RIDER,OPS,ADMIN"
    testing: bool = Field(default=False, validation_alias="FOODIEFI_TESTING")

    stripe_api_key: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(
        default=DEFAULT_STRIPE_WEBHOOK_SECRET,
        validation_alias="STRIPE_WEBHOOK_SECRET",
    )
    payment_currency: str = "inr"
    payment_gateway_timeout_s: float = 10.0
    payment_gateway_max_retries: int = 2
    payment_gateway_backoff_s: float = 0.2
    frontend_url: str = Field(default="http://localhost:5173", validation_alias="FRONTEND_URL")

    tax_rate: float = 0.05
    free_shipping_threshold: float = 500.0
    shipping_fee: float = 50.0

    restaurant_lat: float = 28.6139
    restaurant_lng: float = 77.2090
    restaurant_address: str = "FoodieFi Restaurant, Delhi"

    nearby_default_max_distance_m: int = 5000
    reconcile_pending_after_s: int = 15 * 60
    reconcile_batch_size: int = 50

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("payment_currency")
    @classmethod
    def validate_payment_currency(cls, value: str) -> str:
        currency = value.lower().strip()
        if currency not in ALLOWED_CURRENCIES:
            allowed = ", ".join(sorted(ALLOWED_CURRENCIES))
            raise ValueError(f"payment_currency must be one of: {allowed}")
        return currency

    @field_validator("frontend_url")
    @classmethod
    def normalize_frontend_url(cls, value: str) -> str:
        return value.strip().strip("'\"").rstrip("/")


settings = Settings()


def allowed_origins() -> list[str]:
    return [origin.strip() for origin in settings.cors_allowed_origins.split(",") if origin.strip()]


def allowed_roles_list() -> list[str]:
    return [value.strip() for value in settings.allowed_roles.split(",") if value.strip()]


def checkout_success_url() -> str:
    return f"{settings.frontend_url}/checkout?session_id={{CHECKOUT_SESSION_ID}}&payment=success"


def checkout_cancel_url() -> str:
    return f"{settings.frontend_url}/cancel"


def ensure_secure_runtime_settings() -> None:
    """Fail fast when production-like runtime uses insecure defaults."""
    if settings.testing:
        return
    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        raise RuntimeError(
            "JWT_SECRET must be set to a non-default value when FOODIEFI_TESTING is false"
        )
    if len(settings.jwt_secret) < MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters "
            "when FOODIEFI_TESTING is false"
        )
    if settings.stripe_webhook_secret == DEFAULT_STRIPE_WEBHOOK_SECRET:
        raise RuntimeError(
            "STRIPE_WEBHOOK_SECRET must be set when FOODIEFI_TESTING is false"
        )
    if not settings.stripe_api_key:
        raise RuntimeError("STRIPE_SECRET_KEY must be set when FOODIEFI_TESTING is false")
    if _is_sqlite_url(settings.database_url):
        raise RuntimeError("FOODIEFI_DATABASE_URL must use postgres when FOODIEFI_TESTING is false")


def _is_sqlite_url(database_url: str) -> bool:
    value = database_url.strip().lower()
    return value.startswith("sqlite")
