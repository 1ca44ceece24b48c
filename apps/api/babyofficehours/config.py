"""Application configuration utilities."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AppConfig(BaseModel):
    """Strongly typed configuration loaded from config.json.

    Store credentials are not part of this file; they come from the environment
    (see ``supabase._supabase_config``).
    """

    invite_scheme: str = Field(default="babyofficehours")
    default_invite_ttl_days: int = Field(default=7, ge=0)
    realtime_poll_seconds: float = Field(default=2.0, gt=0)
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    session_idle_seconds: float = Field(default=900.0, gt=0)


def _config_path() -> Path:
    override = os.getenv("OFFICE_HOURS_CONFIG")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[1] / "config.json"


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load configuration from config.json, falling back to defaults when absent."""

    config_file = path or _config_path()
    if not config_file.exists():
        return AppConfig()

    contents: Dict[str, Any] = json.loads(config_file.read_text())
    return AppConfig(**contents)


CONFIG = load_config()
