from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pathlib import Path


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BROWSETRACE_", env_file=".env", extra="ignore")

    # Listen address as host:port
    ADDRESS: str = "127.0.0.1:51425"
    # Storage location; falls back to the platform data directory
    DATA_DIR: Path | None = None
    DB_FILENAME: str = "events.db"
    # SQLite lock wait before a write fails
    BUSY_TIMEOUT_MS: int = Field(default=5000, ge=0)
    # Per-request budgets
    READ_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    # How long in-flight requests may run after a termination signal
    SHUTDOWN_GRACE_SECONDS: float = Field(default=30.0, ge=0)
    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"

    @field_validator("ADDRESS")
    @classmethod
    def validate_address(cls, v: str) -> str:
        host, sep, port = v.rpartition(":")
        if not sep or not host:
            raise ValueError("ADDRESS must be in host:port form")
        if not port.isdigit() or not 0 <= int(port) <= 65535:
            raise ValueError(f"invalid port in ADDRESS: {port!r}")
        return v

    @property
    def host(self) -> str:
        host = self.ADDRESS.rpartition(":")[0]
        # [::1]:51425
        return host.strip("[]")

    @property
    def port(self) -> int:
        return int(self.ADDRESS.rpartition(":")[2])


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
