from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    App settings.

    Notes:
    - Defaults are local and deterministic (SQLite file + YAML under ./config).
    - Every value can be overridden with an `ERP_` environment variable.
    """

    model_config = SettingsConfigDict(env_prefix="ERP_", extra="ignore")

    db_url: str | None = None
    security_config_path: str | None = None
    permissions_config_path: str | None = None
    log_level: str = "INFO"

    audit_default_limit: int = 50
    audit_max_limit: int = 100

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "app.db"
        return f"sqlite:///{db_path}"

    def resolved_security_config_path(self) -> Path:
        if self.security_config_path:
            return Path(self.security_config_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "security_config.yaml"

    def resolved_permissions_config_path(self) -> Path:
        if self.permissions_config_path:
            return Path(self.permissions_config_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "permissions.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
