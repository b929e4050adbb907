from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "production"  # production | staging | development | test
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    flutterwave_secret_key: str | None = None
    flutterwave_secret_hash: str | None = None
    flutterwave_api_base: str = "https://api.flutterwave.com/v3"
    flutterwave_redirect_url: str | None = None
    vapi_webhook_secret: str | None = None
    twilio_auth_token: str | None = None
    webhook_public_base_url: str | None = None
    webhook_allow_unsigned: bool = False
    ledger_timeout_seconds: float = 30.0
    connectivity_timeout_seconds: float = 5.0
    voice_rate_per_minute_cents: int = 25
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _reject_unsigned_in_production(self) -> "Settings":
        if self.webhook_allow_unsigned and self.is_production:
            raise ValueError("WEBHOOK_ALLOW_UNSIGNED cannot be enabled when APP_ENV=production")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    def missing_webhook_secrets(self) -> list[str]:
        missing = []
        if not self.flutterwave_secret_key and not self.flutterwave_secret_hash:
            missing.append("FLUTTERWAVE_SECRET_KEY")
        if not self.vapi_webhook_secret:
            missing.append("VAPI_WEBHOOK_SECRET")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        return missing


settings = Settings()
