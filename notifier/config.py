from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Notifier settings, read from the environment with .env as fallback.

    Everything has a default so the app starts unconfigured; /health/ready
    reports when the WhatsApp credentials are still missing.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./notifier.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Server bind address for the `notifier` command
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # WhatsApp Cloud API
    WHATSAPP_TOKEN: str = ""
    PHONE_NUMBER_ID: str = ""
    GRAPH_API_URL: str = "https://graph.facebook.com/v18.0"
    TEMPLATE_LANGUAGE: str = "pt_BR"
    TEMPLATE_CONSULTA: str = ""
    TEMPLATE_EXAME: str = ""
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Webhook Security
    WEBHOOK_VERIFY_TOKEN: str = "token"
    # When set, POST /webhook requires a matching X-Hub-Signature-256 header
    WEBHOOK_APP_SECRET: str = ""

    # Dispatch throttling: minimum pause after every provider call
    SEND_INTERVAL_SECONDS: float = 1.0

    # Timezone used to render datetimes in exported reports
    REPORT_TIMEZONE: str = "America/Sao_Paulo"

    @property
    def whatsapp_configured(self) -> bool:
        return bool(self.WHATSAPP_TOKEN and self.PHONE_NUMBER_ID)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
