from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Secrets(BaseSettings):
    """Credentials for outbound services, loaded from the environment or a secrets manager."""

    model_config = SettingsConfigDict(
        env_prefix="REGISTRAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    jwt_secret: str = Field(default="change-me", description="Signing secret for studio JWT validation.")
    vision_api_key: Optional[str] = Field(default=None, description="API key for the vision-analysis service.")
    storage_api_key: Optional[str] = Field(default=None, description="API key for the object-storage service.")
    storage_api_secret: Optional[str] = Field(default=None, description="Signing secret for the object-storage service.")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()


class Settings(BaseSettings):
    """Centralised runtime configuration for the Registrar ingest service."""

    model_config = SettingsConfigDict(
        env_prefix="REGISTRAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Registrar API"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0", description="API version for metadata and OpenAPI.")
    log_level: str = Field(default="info")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./registrar.db",
        description="SQLAlchemy compatible DSN for the media catalog.",
    )
    auto_create_schema: bool = Field(default=True, description="Create catalog tables on startup instead of via Alembic.")

    storage_backend: Literal["local", "cloudinary"] = Field(default="local", description="Active object store.")
    local_storage_base_path: Path = Field(default_factory=lambda: Path("media"), description="Root for the local object store.")
    local_storage_base_url: str = Field(default="http://localhost:8000/media", description="Public URL prefix for local objects.")
    storage_cloud_name: Optional[str] = None
    storage_api_base: str = Field(default="https://api.cloudinary.com/v1_1", description="Object-storage REST root.")

    classifier_backend: Literal["static", "gemini"] = Field(default="static", description="Active vision classifier.")
    vision_api_base: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Vision-analysis REST root.",
    )
    vision_model: str = Field(default="gemini-2.0-flash-exp")

    pool_size: int = Field(default=3, ge=1, description="Parallel in-flight items per batch.")
    dispatch_cooldown_s: float = Field(default=1.5, ge=0, description="Minimum gap between two dispatches.")
    rate_limit_backoff_s: float = Field(default=10.0, ge=0, description="Dispatch pause after a rate-limited failure.")
    classify_timeout_s: float = Field(default=60.0, gt=0)
    upload_timeout_s: float = Field(default=120.0, gt=0)
    max_batch_size: int = Field(default=50, ge=1)
    completed_prune_delay_s: float = Field(default=3.0, ge=0, description="Delay before completed items leave the view.")
    metrics_tick_s: float = Field(default=0.5, gt=0, description="Aggregate throughput refresh interval.")
    max_log_lines: int = Field(default=200, ge=1)

    known_agents: tuple[str, ...] = Field(default=("julian", "eleanor", "cassie"))
    default_agent: str = Field(default="julian", description="Agent assigned when classification is inconclusive.")
    max_classifier_tags: int = Field(default=5, ge=0, description="Classifier tags copied onto the stored object.")
    visual_bible_root: str = Field(default="Luminous Deep/Visual_Bible")

    jwt_algorithm: str = Field(default="HS256", description="Algorithm used for JWT tokens.")
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()

    @property
    def storage_configured(self) -> bool:
        if self.storage_backend == "local":
            return True
        return bool(self.storage_cloud_name and self.secrets.storage_api_key and self.secrets.storage_api_secret)

    @property
    def classifier_configured(self) -> bool:
        if self.classifier_backend == "static":
            return True
        return bool(self.secrets.vision_api_key)

    def agent_folder(self, agent: str) -> str:
        return f"{self.visual_bible_root}/{agent}"


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "REGISTRAR_ENV": "REGISTRAR_ENVIRONMENT",
        "REGISTRAR_DB_URL": "REGISTRAR_DATABASE_URL",
        "GOOGLE_API_KEY": "REGISTRAR_VISION_API_KEY",
        "CLOUDINARY_CLOUD_NAME": "REGISTRAR_STORAGE_CLOUD_NAME",
        "CLOUDINARY_API_KEY": "REGISTRAR_STORAGE_API_KEY",
        "CLOUDINARY_API_SECRET": "REGISTRAR_STORAGE_API_SECRET",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()

    secrets = Secrets.from_settings(settings)

    if settings.environment_lower == "production" and secrets.jwt_secret == "change-me":
        raise ValueError("Production environment must have a non-default JWT secret.")
    if settings.default_agent not in settings.known_agents:
        raise ValueError(f"default_agent {settings.default_agent!r} is not one of {settings.known_agents}")

    settings.secrets = secrets
    return settings


__all__ = ["Settings", "Secrets", "get_settings"]
