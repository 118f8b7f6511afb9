"""Process configuration read from the environment (and an optional .env)."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from storysync.llm import ProviderFormat

ROOT = Path(__file__).parent.parent

SAVE_SLOTS = ("SlotA", "SlotB", "SlotC", "SlotD", "SlotE")


class Settings(BaseModel):
    data_dir: Path = ROOT / "data"
    provider_format: ProviderFormat = "gemini"
    provider_url: str = "https://generativelanguage.googleapis.com"
    model: str = "gemini-1.5-flash"
    api_key: str = ""
    call_timeout: float = Field(default=60.0, gt=0)
    max_payload_bytes: int = Field(default=4096, gt=0)
    processed_id_limit: int = Field(default=10_000, gt=0)
    pump_interval: float = Field(default=0.016, gt=0)
    max_party: int = Field(default=4, ge=1)
    log_level: str = "INFO"
    slots: tuple[str, ...] = SAVE_SLOTS


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from STORYSYNC_* variables, defaults for anything unset."""
    load_dotenv(env_file or ROOT / ".env")

    fields: dict[str, str] = {}
    for name in (
        "data_dir",
        "provider_format",
        "provider_url",
        "model",
        "call_timeout",
        "max_payload_bytes",
        "processed_id_limit",
        "pump_interval",
        "max_party",
        "log_level",
    ):
        value = os.getenv(f"STORYSYNC_{name.upper()}", "")
        if value:
            fields[name] = value

    api_key = os.getenv("STORYSYNC_API_KEY") or os.getenv("GEMINI_API_KEY", "")
    if api_key:
        fields["api_key"] = api_key.strip()
    return Settings.model_validate(fields)
