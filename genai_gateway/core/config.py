from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from genai_gateway.gateway.types import AdapterConfig, Vendor


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # OpenAI
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"

    # Google Gemini
    gemini_api_key: str = Field(default="", validation_alias=AliasChoices("gemini_api_key", "google_api_key"))
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # Anthropic
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"

    # Azure OpenAI
    azure_openai_api_key: str = Field(
        default="", validation_alias=AliasChoices("azure_openai_api_key", "azure_openai_key")
    )
    azure_openai_endpoint: str = ""
    azure_openai_api_version: str = "2024-06-01"
    azure_openai_image_deployment: str = Field(
        default="dall-e-3",
        validation_alias=AliasChoices("azure_openai_image_deployment", "azure_openai_deployment_image"),
    )

    # Vendor call timeouts (seconds)
    chat_timeout_seconds: float = 60.0
    image_timeout_seconds: float = 120.0

    # Rate limits (per client IP, sliding window)
    chat_rate_limit: int = 30
    chat_rate_window_seconds: float = 60.0
    image_rate_limit: int = 10
    image_rate_window_seconds: float = 300.0

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_version: str = "1.0.0"

    # CORS
    allowed_origins: str = "http://localhost:5173,http://localhost:3000"  # comma-separated, "*" allows all

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    def provider_status(self) -> dict[str, bool]:
        """Credential presence per vendor. Never contacts a vendor."""
        return {
            Vendor.OPENAI.value: bool(self.openai_api_key),
            Vendor.GEMINI.value: bool(self.gemini_api_key),
            Vendor.ANTHROPIC.value: bool(self.anthropic_api_key),
            Vendor.AZURE.value: bool(self.azure_openai_api_key and self.azure_openai_endpoint),
        }

    def adapter_config(self, vendor: Vendor) -> AdapterConfig:
        """Build the AdapterConfig for *vendor* from process settings."""
        timeouts = dict(timeout_seconds=self.chat_timeout_seconds, image_timeout_seconds=self.image_timeout_seconds)
        if vendor == Vendor.OPENAI:
            return AdapterConfig(api_key=self.openai_api_key, base_url=self.openai_base_url, **timeouts)
        if vendor == Vendor.GEMINI:
            return AdapterConfig(api_key=self.gemini_api_key, base_url=self.gemini_base_url, **timeouts)
        if vendor == Vendor.ANTHROPIC:
            return AdapterConfig(
                api_key=self.anthropic_api_key,
                base_url=self.anthropic_base_url,
                api_version=self.anthropic_version,
                **timeouts,
            )
        return AdapterConfig(
            api_key=self.azure_openai_api_key,
            endpoint=self.azure_openai_endpoint,
            api_version=self.azure_openai_api_version,
            deployment=self.azure_openai_image_deployment,
            **timeouts,
        )


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup."""
    errors: list[str] = []

    if settings.app_env == "production":
        if "*" in settings.origins:
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if settings.chat_rate_limit < 1 or settings.image_rate_limit < 1:
        errors.append("CHAT_RATE_LIMIT and IMAGE_RATE_LIMIT must be >= 1")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
