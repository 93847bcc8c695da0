"""Configuration model for the device agent."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Environment-driven settings for the device agent."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    device_code: str = "device-local-1"
    device_name: str = "Local device"
    certificate_request: str = ""
    model: str | None = None
    brand: str | None = None
    app_version: str = "0.1.0"
    control_plane_url: str = "http://localhost:8000"

    poll_timeout_seconds: float = 30.0
    retry_interval_seconds: float = 5.0
    simulated_run_seconds: float = 0.5

    # Offline report buffer
    offline_dir: str = "/data/agent-offline"
    offline_max_files: int = 500
    offline_max_age_seconds: int = 86400
    offline_replay_batch_size: int = 25
    offline_replay_interval_seconds: float = 0.05

    @property
    def resolved_certificate_request(self) -> str:
        return self.certificate_request or f"agent:{self.device_code}"


@lru_cache
def get_agent_settings() -> AgentSettings:
    """Get cached agent settings."""
    return AgentSettings()
