"""Application configuration for the desk relay."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LAN_ORIGIN_REGEX = (
    r"^http://(localhost|192\.168\.\d+\.\d+|10\.\d+\.\d+\.\d+|172\.\d+\.\d+\.\d+):(3000|4000|5173)$"
)


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4000)

    cors_allow_origins: list[str] = Field(default_factory=lambda: [
        "http://localhost:4000",
        "http://localhost:3000",
        "http://localhost:5173",
    ])
    cors_allow_origin_regex: str | None = Field(default=LAN_ORIGIN_REGEX)

    pairing_ttl_seconds: int = Field(default=24 * 60 * 60, ge=1)
    public_base_url: str = Field(default="http://localhost:4000")
    relay_path: str = Field(default="/ws")

    scan_session_ttl_seconds: int = Field(default=60 * 60, ge=1)

    participant_api_base_url: str = Field(default="http://localhost:3001")
    participant_api_key: str = Field(default="")
    participant_api_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def relay_url(self) -> str:
        """WebSocket URL of the relay derived from the public base URL."""

        base = self.public_base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}{self.relay_path}"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
