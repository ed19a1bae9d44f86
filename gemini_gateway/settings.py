from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CORS_ALLOWED_ORIGINS = ",".join(
    [
        "http://localhost:5173",
        "http://localhost:4173",
        "https://*.vercel.app",
    ]
)


class Settings(BaseSettings):
    google_service_account_json: str | None = None
    vertex_project_id: str | None = None
    vertex_location: str = "us-central1"
    generative_language_base_url: str = "https://generativelanguage.googleapis.com"
    vertex_base_url: str = "https://{location}-aiplatform.googleapis.com"
    cors_allowed_origins: str = DEFAULT_CORS_ALLOWED_ORIGINS
    model_routes_path: str | None = None
    document_store_path: str | None = None
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    gateway_audit_log_enabled: bool = False
    gateway_audit_log_path: str = "logs/gateway_requests.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def cors_allowed_origins_list(self) -> list[str]:
        return _split_csv(self.cors_allowed_origins)

    def vertex_base_url_for_location(self) -> str:
        return self.vertex_base_url.replace("{location}", self.vertex_location)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
