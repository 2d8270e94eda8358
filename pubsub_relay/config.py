from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration.

    Notes:
    - On Cloud Run / Cloud Functions, prefer Workload Identity (ADC) for Bigtable + Pub/Sub.
    - Identifiers are opaque strings; nothing here talks to GCP.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Service identity
    SERVICE_NAME: str = Field(
        default="pubsub-bigtable-relay",
        validation_alias=AliasChoices("SERVICE_NAME", "K_SERVICE"),
    )
    ENV: str = Field(default="unknown", validation_alias=AliasChoices("ENV", "ENVIRONMENT"))
    LOG_LEVEL: str = "INFO"

    # HTTP
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    # Synchronous diagnostics endpoint (POST /pubsub/test).
    ENABLE_TEST_ENDPOINT: bool = True

    # Accept common env var names used by GCP tooling.
    GCP_PROJECT: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT", "GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT", "PROJECT_ID"),
    )

    # Bigtable
    BIGTABLE_INSTANCE: str = Field(validation_alias=AliasChoices("BIGTABLE_INSTANCE", "BIGTABLE_INSTANCE_NAME"))
    BIGTABLE_TABLE: str = Field(validation_alias=AliasChoices("BIGTABLE_TABLE", "BIGTABLE_TABLE_NAME"))

    # Downstream topic (short name or projects/<p>/topics/<t>)
    PUBSUB_TOPIC: str = Field(validation_alias=AliasChoices("PUBSUB_TOPIC", "PUBSUB_TOPIC_NAME"))

    @field_validator("BIGTABLE_INSTANCE", "BIGTABLE_TABLE", "PUBSUB_TOPIC")
    @classmethod
    def _require_non_blank(cls, v: str) -> str:
        s = str(v or "").strip()
        if not s:
            raise ValueError("must not be blank")
        return s

    @field_validator("GCP_PROJECT")
    @classmethod
    def _blank_project_is_none(cls, v: Optional[str]) -> Optional[str]:
        s = str(v or "").strip()
        return s or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
