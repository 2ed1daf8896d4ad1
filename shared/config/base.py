from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseServiceSettings(BaseSettings):
    """Base configuration inherited by every component that embeds the gate.

    Values are loaded from environment variables (or a local .env file).
    The Azure OpenAI key may stay empty; the classifier then fails open.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    service_name: str = Field(..., description="Service identifier")
    app_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO")
    debug: bool = Field(default=False)

    # Redpanda (audit events); empty disables the bus publisher
    redpanda_bootstrap_servers: str = Field(default="", description="Comma-separated broker list")

    # Azure OpenAI
    azure_openai_endpoint: str = Field(default="")
    azure_openai_api_key: SecretStr = Field(default=SecretStr(""))
    azure_openai_api_version: str = Field(default="2024-08-01-preview")
    azure_openai_classifier_deployment: str = Field(default="gpt-4o-mini")
