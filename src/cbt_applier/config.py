"""Configuration management for the change block tracking applier."""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CBT_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # vCenter connection
    server: str | None = Field(default=None, description="vCenter or ESXi hostname")
    user: str | None = Field(default=None, description="vCenter username")
    password: SecretStr | None = Field(default=None, description="vCenter password")
    port: int = Field(default=443, description="vCenter HTTPS port")
    verify_ssl: bool = Field(default=False, description="Verify the vCenter certificate")

    # Task handling
    task_timeout_seconds: int = Field(
        default=600, description="Max seconds to wait for a single vSphere task"
    )
    task_poll_interval_seconds: float = Field(
        default=1.0, description="Seconds between task state polls"
    )

    # Apply behaviour
    snapshot_prefix: str = Field(
        default="cbt-apply", description="Literal tag prefixed to transient snapshot names"
    )
    skip_unchanged: bool = Field(
        default=False, description="Skip VMs whose flag already matches the desired setting"
    )

    # Logging
    log_level: str = Field(default="info", description="Minimum log level")
    log_format: str = Field(default="console", description="console or json")

    @property
    def connection_configured(self) -> bool:
        """Check if enough is set to log in to vCenter."""
        return bool(self.server and self.user)


def get_settings() -> Settings:
    """Get application settings singleton."""
    return Settings()
