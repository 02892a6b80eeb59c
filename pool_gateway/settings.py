from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OAUTH_SCOPES = ",".join(
    [
        "https://www.googleapis.com/auth/cloud-platform",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/cclog",
        "https://www.googleapis.com/auth/experimentsandconfigs",
    ]
)


class Settings(BaseSettings):
    admin_api_key: str | None = None
    database_url: str | None = None
    database_echo: bool = False
    redis_url: str | None = None
    upstream_base_url: str = "https://daily-cloudcode-pa.sandbox.googleapis.com"
    upstream_chat_path: str = "/v1internal:streamGenerateContent?alt=sse"
    upstream_models_path: str = "/v1internal:fetchAvailableModels"
    upstream_user_agent: str = "antigravity/1.11.3 windows/amd64"
    upstream_timeout_seconds: float = 600.0
    upstream_connect_timeout_seconds: float = 10.0
    oauth_client_id: str = ""
    oauth_client_secret: str | None = None
    oauth_authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_callback_url: str = "http://localhost:8000/api/oauth/callback"
    oauth_scopes: str = DEFAULT_OAUTH_SCOPES
    oauth_state_ttl_seconds: int = 300
    oauth_pending_max_entries: int = 4096
    token_expiry_margin_seconds: int = 300
    quota_cache_ttl_seconds: int = 300
    shared_quota_per_account: float = 2.0
    signature_ttl_seconds: int = 7200
    default_temperature: float = 1.0
    default_top_p: float = 0.85
    default_top_k: int = 50
    default_max_tokens: int = 8096
    system_instruction: str = ""
    model_catalog_path: str | None = None
    gateway_audit_log_enabled: bool = True
    gateway_audit_log_path: str = "logs/gateway_events.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def oauth_scopes_list(self) -> list[str]:
        return _split_csv(self.oauth_scopes)

    @property
    def oauth_is_configured(self) -> bool:
        return bool(self.oauth_client_id)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
