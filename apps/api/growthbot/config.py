"""Application configuration utilities."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

_ENV_OVERRIDES = {
    "OPENAI_API_KEY": "openai_api_key",
    "GROWTHBOT_OPENAI_MODEL": "openai_model",
    "GROWTHBOT_REPORT_MODEL": "report_model",
    "GROWTHBOT_DATABASE_PATH": "database_path",
    "GROWTHBOT_LMS_DATA_PATH": "lms_data_path",
    "GROWTHBOT_CDF_METHOD": "cdf_method",
    "GROWTHBOT_SESSION_BACKEND": "session_backend",
    "GROWTHBOT_REFERENCE_BACKEND": "reference_backend",
    "GROWTHBOT_NARRATE_REPORTS": "narrate_reports",
    "KV_REST_API_URL": "kv_rest_api_url",
    "KV_REST_API_TOKEN": "kv_rest_api_token",
}


class AppConfig(BaseModel):
    """Strongly typed configuration loaded from config.json and the environment."""

    openai_api_key: Optional[str] = Field(default=None, alias="openai_api_key")
    openai_model: str = Field(default="gpt-4o-mini")
    report_model: str = Field(default="gpt-4o")
    database_path: str = Field(default="./data/growthbot.db")
    lms_data_path: str = Field(default="./data/lms_data.json")
    percentile_decimals: int = Field(default=1, ge=0, le=4)
    cdf_method: Literal["approx", "exact", "legacy"] = Field(default="approx")
    lookup_timeout_seconds: float = Field(default=3.0, gt=0)
    session_backend: Literal["sqlite", "memory", "kv"] = Field(default="sqlite")
    session_ttl_seconds: int = Field(default=60 * 60 * 24, gt=0)
    reference_backend: Literal["local", "kv"] = Field(default="local")
    kv_rest_api_url: Optional[str] = None
    kv_rest_api_token: Optional[str] = None
    narrate_reports: bool = Field(default=False)
    cors_origins: List[str] = Field(default_factory=list)

    @property
    def resolved_database_path(self) -> Path:
        """Return the absolute path for the SQLite session database."""
        return (Path(__file__).resolve().parents[1] / self.database_path).resolve()

    @property
    def resolved_lms_data_path(self) -> Path:
        """Return the absolute path of the built LMS table artefact."""
        return (Path(__file__).resolve().parents[1] / self.lms_data_path).resolve()


def _config_path() -> Path:
    override = os.getenv("GROWTHBOT_CONFIG")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[1] / "config.json"


def load_config() -> AppConfig:
    """Load configuration from config.json (optional) and apply env overrides.

    A missing config.json is fine as long as the environment supplies what is
    needed; a config.json that is not valid JSON is a hard error.
    """

    contents: Dict[str, Any] = {}
    config_file = _config_path()
    if config_file.exists():
        try:
            contents = json.loads(config_file.read_text())
        except json.JSONDecodeError as exc:
            raise ValueError(f"config.json at {config_file} is not valid JSON: {exc}") from exc

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            contents[field_name] = value
    return AppConfig(**contents)


CONFIG = load_config()
