from functools import lru_cache
import json
import os

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except Exception:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    environment: str = Field(default="development", validation_alias=AliasChoices("ENVIRONMENT"))
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    # Session tokens are minted by the external identity provider.
    session_jwt_secret: str = ""
    session_jwt_audience: str = ""

    # --- AI ---
    ai_provider: str = "openai"
    ai_model: str = ""
    ai_classify_provider: str = ""
    ai_classify_model: str = ""
    ai_allowed_providers_raw: str = Field(
        default="openai,claude,mock",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    ai_allowed_models_raw: str = Field(
        default="",
        validation_alias=AliasChoices("AI_ALLOWED_MODELS"),
    )
    enable_ai_overrides: bool = False
    ai_allow_mock_fallback: bool = False
    ai_timeout_seconds: float = 60.0
    ai_classify_timeout_seconds: float = 20.0
    ai_classify_max_tokens: int = 50
    # Only used for providers whose API insists on an output cap.
    ai_provider_max_output_tokens: int = 8192
    ai_debug_store_raw: bool = False
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # --- Billing (PayMongo) ---
    paymongo_secret_key: str = ""
    paymongo_webhook_secret: str = ""
    paymongo_api_base: str = "https://api.paymongo.com/v1"
    paymongo_timeout_seconds: float = 15.0
    webhook_tolerance_seconds: int = 300
    site_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("SITE_URL", "NEXT_PUBLIC_SITE_URL"),
    )

    enable_recurring_jobs: bool = False
    billing_retry_interval_seconds: int = 60
    billing_retry_batch_size: int = 50
    billing_retry_max_attempts: int = 8

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: list[str] = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "user_email",
            "address",
            "birthdate",
            "id_number",
            "idnumber",
            "passport",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    rate_limit_webhook_enabled: bool = True
    rate_limit_paymongo_ip_per_min: int = 120
    rate_limit_analyze_enabled: bool = True
    rate_limit_analyze_per_min: int = 20
    rate_limit_api_enabled: bool = False
    rate_limit_api_per_min: int = 300
    trusted_proxy_cidrs_raw: str = Field(
        default="",
        validation_alias=AliasChoices("TRUSTED_PROXY_CIDRS"),
    )

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins: list[str] = Field(default_factory=list)
    cors_allow_methods: list[str] = Field(default_factory=lambda: ["GET", "POST", "OPTIONS"])
    cors_allow_headers: list[str] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
        "Paymongo-Signature",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def ai_allowed_providers(self) -> list[str]:
        return [item.lower() for item in _parse_list_value(self.ai_allowed_providers_raw)]

    @property
    def ai_allowed_models(self) -> dict[str, list[str]]:
        """``AI_ALLOWED_MODELS`` as ``provider:model`` pairs, comma separated."""
        allowed: dict[str, list[str]] = {}
        for item in _parse_list_value(self.ai_allowed_models_raw):
            provider, sep, model = item.partition(":")
            if not sep or not model.strip():
                continue
            allowed.setdefault(provider.strip().lower(), []).append(model.strip())
        return allowed

    @property
    def trusted_proxy_cidrs(self) -> list[str]:
        return _parse_list_value(self.trusted_proxy_cidrs_raw)

    def validate_required_config(self) -> list[str]:
        errors: list[str] = []
        if not self.database_url:
            errors.append("DATABASE_URL is not set")
        if not self.session_jwt_secret:
            errors.append("SESSION_JWT_SECRET is not set")
        if self.ai_provider == "openai" and not self.openai_api_key:
            errors.append("OPENAI_API_KEY is not set")
        if self.ai_provider == "claude" and not self.anthropic_api_key:
            errors.append("ANTHROPIC_API_KEY is not set")
        if not self.paymongo_secret_key:
            errors.append("PAYMONGO_SECRET_KEY is not set")
        if not self.paymongo_webhook_secret:
            errors.append("PAYMONGO_WEBHOOK_SECRET is not set")
        return errors


def current_environment() -> str:
    return (os.getenv("ENVIRONMENT") or get_settings().environment or "development").strip().lower()


@lru_cache

def get_settings() -> Settings:
    return Settings()
