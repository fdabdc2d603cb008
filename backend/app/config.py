"""Application configuration."""

from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings

_TUNNEL_OFF_VALUES = {"false", "0", "no", ""}


def _default_data_dir() -> str:
    return str(Path.home() / ".quire" / "data")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The desktop launcher injects PORT, QUIRE_DESKTOP, QUIRE_TUNNEL,
    QUIRE_DATA_DIR and QUIRE_REPO_ROOT; nothing else couples the two processes.
    """

    # Development mode: exposes exception details in error responses
    dev_mode: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8787, validation_alias=AliasChoices("PORT", "QUIRE_PORT"))

    # Desktop integration
    desktop_mode: bool = Field(
        default=False, validation_alias=AliasChoices("QUIRE_DESKTOP", "QUIRE_DESKTOP_MODE")
    )
    tunnel_mode: str = Field(default="false", validation_alias="QUIRE_TUNNEL")
    data_dir: str = Field(default_factory=_default_data_dir, validation_alias="QUIRE_DATA_DIR")
    repo_root: str = Field(default=".", validation_alias="QUIRE_REPO_ROOT")

    # Toolchain diagnostics
    python_override: str = Field(default="", validation_alias="QUIRE_PYTHON")
    probe_timeout_seconds: float = 4.0
    tunnel_start_timeout_seconds: float = 20.0

    # Logging
    log_level: str = "info"

    @field_validator("tunnel_mode")
    @classmethod
    def _normalize_tunnel_mode(cls, value: str) -> str:
        return (value or "").strip().lower()

    @property
    def tunnel_enabled(self) -> bool:
        """Desktop mode always wins over an explicit tunnel request."""
        if self.desktop_mode:
            return False
        return self.tunnel_mode not in _TUNNEL_OFF_VALUES

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True


settings = Settings()
