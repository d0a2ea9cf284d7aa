"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    coverage_db_path: str = "./data/coverage.db"
    # Empty means "derive from hostname + pid" at startup.
    instance_id: str = ""

    # Scheduler trigger
    scheduler_enabled: bool = True
    scheduler_tick_seconds: float = 60.0

    # Periodic jobs (interval / lock ttl)
    check_call_sweep_interval_minutes: int = 15
    check_call_sweep_lock_ttl_seconds: int = 600
    risk_sweep_interval_minutes: int = 30
    risk_sweep_lock_ttl_seconds: int = 900
    fall_off_review_interval_minutes: int = 60
    fall_off_review_lock_ttl_seconds: int = 600

    # Messaging (OpenPhone SMS, Resend email)
    openphone_api_key: str = ""
    openphone_from_number: str = ""
    openphone_base_url: str = "https://api.openphone.com/v1"
    resend_api_key: str = ""
    resend_base_url: str = "https://api.resend.com"
    email_from: str = "noreply@silkroutelogistics.ai"
    messaging_timeout_seconds: float = 15.0
    app_base_url: str = "https://silkroutelogistics.ai"

    # Matching
    match_limit: int = 10
    backup_offer_count: int = 3

    # Check-calls
    check_call_timezone: str = "America/Chicago"
    expedited_min_customer_rating: int = 3
    check_call_response_window_minutes: int = 30
    check_call_batch_size: int = 50

    # Risk
    risk_alert_dedup_minutes: int = 30
    auto_rematch_red_unassigned: bool = False

    # Fall-off
    deactivation_review_threshold: int = 2
    fall_off_stale_after_minutes: int = 120

    def sms_configured(self) -> bool:
        return bool(self.openphone_api_key.strip() and self.openphone_from_number.strip())

    def email_configured(self) -> bool:
        return bool(self.resend_api_key.strip())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
