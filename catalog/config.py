import os

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv(".env")


def _default_db_url() -> str:
    env_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_url:
        return env_url

    user = os.getenv("POSTGRES_USER", "postgres")
    password = os.getenv("POSTGRES_PASSWORD", "postgres")
    db_name = os.getenv("POSTGRES_DB", "catalog")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{db_name}"


class Settings(BaseSettings):
    app_name: str = "Catalog API"
    version: str = "1.0.0"
    environment: str = "development"

    database_url: str = Field(default_factory=_default_db_url)
    db_pool_size: int = Field(default=25, ge=1)
    db_max_idle_seconds: int = Field(default=15 * 60, ge=1)
    db_query_timeout_seconds: float = Field(default=3.0, gt=0)

    limiter_enabled: bool = True
    limiter_rps: float = Field(default=2.0, gt=0)
    limiter_burst: int = Field(default=4, ge=1)

    keycloak_audience: str = "catalog-api"
    keycloak_issuer: str = "https://localhost/realms/catalog"
    jwks_url: str = "http://localhost:8080/realms/catalog/protocol/openid-connect/certs"
    keycloak_client_secret: str | None = None

    otel_enabled: bool = False
    otel_endpoint: str = "http://otel-collector:4318"
    otel_service_name: str = "catalog-api"

    require_https: bool = False
    strict_security: bool = False

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


_INSECURE_MARKERS = ("postgres:postgres@", "changeme", "change-me", "replace-me", "root@")


def get_settings() -> Settings:
    settings = Settings()
    if settings.strict_security:
        if any(marker in settings.database_url for marker in _INSECURE_MARKERS):
            raise RuntimeError("Insecure database credentials detected")
        secret = settings.keycloak_client_secret
        if secret and any(marker in secret for marker in _INSECURE_MARKERS):
            raise RuntimeError("Insecure client secret detected")
    return settings
