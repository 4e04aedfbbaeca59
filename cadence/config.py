from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from cadence.errors import ConfigError


def _resolve_project_root() -> Path:
    override = os.getenv("CADENCE_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    config_file: Path = Field(default_factory=lambda: _resolve_project_root() / "config" / "cadence.yaml")

    db_url: str = Field(default_factory=lambda: os.getenv("CADENCE_DB_URL", "").strip())
    webhook_secret: str = Field(default_factory=lambda: os.getenv("CADENCE_WEBHOOK_SECRET", ""))

    stale_after_days: int = 3

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return self.db_url or f"sqlite:///{self.data_dir / 'cadence.db'}"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping", metadata={"path": str(path)})
        return data

    def apply_file_overrides(self) -> None:
        risk = self.load_yaml(self.config_file).get("risk") or {}
        if "stale_after_days" in risk:
            try:
                self.stale_after_days = int(risk["stale_after_days"])
            except (TypeError, ValueError) as exc:
                raise ConfigError("risk.stale_after_days must be an integer") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.apply_file_overrides()
    if not settings.db_url:
        settings.ensure_directories()
    return settings
