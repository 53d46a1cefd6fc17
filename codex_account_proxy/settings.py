from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

RetryProfileName = Literal["conservative", "balanced", "aggressive"]


class Settings(BaseSettings):
    codex_base_url: str = "https://chatgpt.com/backend-api"
    codex_config_dir: str = "~/.opencode"
    codex_user_config_path: str | None = None
    codex_mode: bool = True
    codex_selection_strategy: Literal["hybrid", "round-robin"] = "hybrid"

    codex_auth_retry_all_rate_limited: bool = True
    codex_auth_retry_all_max_wait_ms: int = 0
    codex_auth_retry_all_max_retries: int = 3
    codex_auth_token_refresh_skew_ms: int = 60_000
    codex_auth_rate_limit_toast_debounce_ms: int = 60_000
    codex_auth_fetch_timeout_ms: int = 600_000
    codex_auth_stream_stall_enabled: bool = True
    codex_auth_stream_stall_timeout_ms: int = 45_000
    codex_auth_retry_profile: RetryProfileName = "balanced"
    codex_auth_retry_budget_auth_refresh: int | None = None
    codex_auth_retry_budget_network: int | None = None
    codex_auth_retry_budget_server: int | None = None
    codex_auth_retry_budget_rate_limit_short: int | None = None
    codex_auth_retry_budget_rate_limit_global: int | None = None
    codex_auth_retry_budget_empty_response: int | None = None
    codex_auth_unsupported_model_fallback: bool = True
    codex_auth_fallback_gpt53_to_gpt52: bool = True
    codex_auth_auth_failure_cooldown_ms: int = 30_000
    codex_auth_network_cooldown_ms: int = 10_000
    codex_auth_save_debounce_ms: int = 400
    codex_auth_account_id: str | None = None
    codex_collaboration_mode: str | None = None

    codex_fast_session: bool = False
    codex_fast_session_strategy: Literal["hybrid", "always"] = "hybrid"
    codex_fast_session_max_input_items: int = 30

    codex_instructions_dir: str | None = None
    codex_instructions_ttl_seconds: int = 900

    ingress_auth_required: bool = False
    ingress_api_keys: str = ""

    proxy_host: str = "127.0.0.1"
    proxy_port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def config_dir(self) -> Path:
        return Path(self.codex_config_dir).expanduser()

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)

    @property
    def forced_account_id(self) -> str | None:
        value = (self.codex_auth_account_id or "").strip()
        return value or None

    @property
    def retry_budget_overrides(self) -> dict[str, int]:
        raw = {
            "auth_refresh": self.codex_auth_retry_budget_auth_refresh,
            "network": self.codex_auth_retry_budget_network,
            "server": self.codex_auth_retry_budget_server,
            "rate_limit_short": self.codex_auth_retry_budget_rate_limit_short,
            "rate_limit_global": self.codex_auth_retry_budget_rate_limit_global,
            "empty_response": self.codex_auth_retry_budget_empty_response,
        }
        return {key: value for key, value in raw.items() if value is not None}


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
