"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level settings loaded from environment variables.

    Dispatch tunables (offer timeout, cooldown, templates, ...) are runtime data
    kept in the state store; see ``farmout.models.settings``.
    """
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    log_level: str = "INFO"
    log_json: bool = False
    state_db_path: str = "./data/farmout_state.db"
    dispatch_timezone: str = "UTC"
    portal_base_url: str = "http://localhost:8000/portal"

    # Outbound SMS gateway. Messages are only recorded to the outbox when unset.
    sms_gateway_url: str = ""
    sms_api_token: str = ""
    sms_from_number: str = ""
    sms_timeout_seconds: float = 10.0

    # Optional database-side ranking function
    ranking_service_url: str = ""
    ranking_api_token: str = ""
    ranking_timeout_seconds: float = 5.0

    # Auth
    auth_enabled: bool = False
    api_tokens: str = ""

    def resolved_timezone(self) -> ZoneInfo:
        """Dispatch timezone, falling back to UTC for unknown names."""
        name = (self.dispatch_timezone or "").strip() or "UTC"
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")

    def sms_enabled(self) -> bool:
        return bool((self.sms_gateway_url or "").strip())

    def remote_ranking_enabled(self) -> bool:
        return bool((self.ranking_service_url or "").strip())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
