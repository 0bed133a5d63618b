from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    vault_dir: str
    feedly_api_base_url: str
    feedly_http_timeout: float
    feedly_user_id: str
    feedly_access_token: str
    log_level: str

    @staticmethod
    def from_env() -> "Settings":
        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/feedsync.db").strip(),
            vault_dir=os.getenv("VAULT_DIR", "/app/_local/vault").strip(),
            feedly_api_base_url=os.getenv("FEEDLY_API_BASE_URL", "https://cloud.feedly.com/v3").strip(),
            feedly_http_timeout=_f("FEEDLY_HTTP_TIMEOUT", "30"),
            feedly_user_id=os.getenv("FEEDLY_USER_ID", "").strip(),
            feedly_access_token=os.getenv("FEEDLY_ACCESS_TOKEN", "").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        )
