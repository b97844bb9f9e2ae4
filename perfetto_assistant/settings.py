"""Assistant settings, persisted in the key/value store."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields

from perfetto_assistant.storage import SETTINGS_KEY, KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_URL = "http://localhost:3000"
DEFAULT_MAX_RETRIES = 5
DEFAULT_COMPLETION_TIMEOUT_S = 30.0


@dataclass
class Settings:
    backend_url: str = DEFAULT_BACKEND_URL
    max_retries: int = DEFAULT_MAX_RETRIES
    completion_timeout_s: float = DEFAULT_COMPLETION_TIMEOUT_S
    request_timeout_s: float = 30.0
    upload_timeout_s: float = 60.0
    health_timeout_s: float = 1.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            default = getattr(cls, key)
            try:
                values[key] = type(default)(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid setting %s=%r", key, value)
        return cls(**values)


def _apply_env(settings: Settings) -> Settings:
    backend_url = os.getenv("PERFETTO_ASSISTANT_BACKEND_URL")
    if backend_url:
        settings.backend_url = backend_url
    max_retries = os.getenv("PERFETTO_ASSISTANT_MAX_RETRIES")
    if max_retries:
        try:
            settings.max_retries = int(max_retries)
        except ValueError:
            logger.warning("Ignoring PERFETTO_ASSISTANT_MAX_RETRIES=%r", max_retries)
    return settings


def load_settings(store: KeyValueStore, *, use_env: bool = True) -> Settings:
    """Stored settings merged over the defaults, then environment overrides."""
    stored = store.get(SETTINGS_KEY)
    settings = Settings.from_dict(stored) if isinstance(stored, dict) else Settings()
    if use_env:
        settings = _apply_env(settings)
    settings.backend_url = settings.backend_url.rstrip("/")
    return settings


def save_settings(store: KeyValueStore, settings: Settings) -> None:
    store.set(SETTINGS_KEY, settings.to_dict())
