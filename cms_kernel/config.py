from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "CMS Extension Kernel"
    app_version: str = "0.4.0"
    debug: bool = False
    environment: str = "development"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./cms_kernel.db"

    # Security settings
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    cron_run_token: str = ""

    # CORS settings
    allowed_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Extension discovery. themes_path accepts a comma separated list; the
    # first directory wins when two ship the same theme id.
    plugins_path: str = "plugins"
    themes_path: str = "themes"

    # Event queues
    analytics_queue_autodrain: bool = True
    domain_event_queue_autodrain: bool = True

    # Webhooks / webcallbacks
    webhook_signing_secret: str = ""
    webhook_timeout_seconds: float = 10.0
    webcallback_secret: str = ""
    signature_policy: str = "warn"  # off | warn | enforce

    # Communications governance
    communication_rate_limit_max: int = 60
    communication_rate_limit_window_seconds: int = 60

    # Background scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 60
    scheduler_lock_ttl_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def get_themes_dirs(self) -> list[str]:
        return [part.strip() for part in self.themes_path.split(",") if part.strip()]


settings = Settings()
