from __future__ import annotations

import os
import tempfile
from typing import Any

from pydantic import BaseModel, Field

from sessionsync.bridge import DEFAULT_SYNC_DEBOUNCE_SECONDS, DEFAULT_TOKEN_TEMPLATE
from sessionsync.retry import DEFAULT_BASE_DELAY_SECONDS, DEFAULT_MAX_RETRIES

DEFAULT_STORAGE_PATH = os.path.join(tempfile.gettempdir(), "aspirely", "client-cache.sqlite3")
DEFAULT_LOGO_URL = "https://aspirely.ai/logo.png"


class SessionSettings(BaseModel):
    backend_url: str = "http://localhost:54321"
    backend_key: str = ""
    storage_path: str | None = DEFAULT_STORAGE_PATH
    storage_quota_bytes: int | None = Field(default=5 * 1024 * 1024, ge=1)
    token_template: str = DEFAULT_TOKEN_TEMPLATE
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=10)
    retry_base_delay: float = Field(default=DEFAULT_BASE_DELAY_SECONDS, ge=0)
    retry_transient: bool = True
    sync_debounce: float = Field(default=DEFAULT_SYNC_DEBOUNCE_SECONDS, ge=0)
    logo_url: str = DEFAULT_LOGO_URL

    @classmethod
    def from_env(cls, **overrides: Any) -> SessionSettings:
        values: dict[str, Any] = {}
        env_map = {
            "backend_url": "ASPIRELY_BACKEND_URL",
            "backend_key": "ASPIRELY_BACKEND_KEY",
            "storage_path": "ASPIRELY_STORAGE_PATH",
            "token_template": "ASPIRELY_TOKEN_TEMPLATE",
            "max_retries": "ASPIRELY_MAX_RETRIES",
            "retry_base_delay": "ASPIRELY_RETRY_BASE_DELAY",
            "retry_transient": "ASPIRELY_RETRY_TRANSIENT",
            "sync_debounce": "ASPIRELY_SYNC_DEBOUNCE",
            "logo_url": "ASPIRELY_LOGO_URL",
        }
        for field_name, env_name in env_map.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                values[field_name] = raw
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)
