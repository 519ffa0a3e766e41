"""Application configuration using environment variables."""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .prompts import SYSTEM_PROMPT

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Relay credentials, keyed by provider
    groq_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("GROQ_API_KEY", "groq_api_key"),
    )
    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    groq_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.groq.com/openai/v1"),
        validation_alias=AliasChoices("GROQ_BASE_URL", "groq_base_url"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    groq_model: str = Field(
        default="llama-3.1-8b-instant",
        validation_alias=AliasChoices("GROQ_MODEL", "groq_model"),
    )
    openai_model: str = Field(
        default="gpt-4o",
        validation_alias=AliasChoices("OPENAI_MODEL", "openai_model"),
    )
    default_provider: str = Field(
        default="groq",
        validation_alias=AliasChoices("DEFAULT_PROVIDER", "default_provider"),
    )

    # Image side channels
    huggingface_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "HUGGINGFACE_API_KEY", "HF_TOKEN", "huggingface_api_key"
        ),
    )
    image_model_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl(
            "https://api-inference.huggingface.co/models/stabilityai/stable-diffusion-xl-base-1.0"
        ),
        validation_alias=AliasChoices("IMAGE_MODEL_URL", "image_model_url"),
    )
    background_removal_model_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl(
            "https://api-inference.huggingface.co/models/briaai/RMBG-1.4"
        ),
        validation_alias=AliasChoices(
            "BACKGROUND_REMOVAL_MODEL_URL", "background_removal_model_url"
        ),
    )

    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("REQUEST_TIMEOUT", "timeout"),
        ge=1,
    )
    max_stream_seconds: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("MAX_STREAM_SECONDS", "max_stream_seconds"),
        gt=0,
    )

    # Completion request shaping
    context_message_limit: int = Field(
        default=20,
        ge=1,
        validation_alias=AliasChoices(
            "CONTEXT_MESSAGE_LIMIT", "context_message_limit"
        ),
    )
    completion_temperature: float = Field(
        default=0.7,
        ge=0,
        le=2,
        validation_alias=AliasChoices(
            "COMPLETION_TEMPERATURE", "completion_temperature"
        ),
    )
    completion_max_tokens: int = Field(
        default=4000,
        ge=1,
        validation_alias=AliasChoices(
            "COMPLETION_MAX_TOKENS", "completion_max_tokens"
        ),
    )
    system_prompt: str = Field(
        default=SYSTEM_PROMPT,
        validation_alias=AliasChoices("SYSTEM_PROMPT", "system_prompt"),
    )

    cors_allowed_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "CORS_ALLOWED_ORIGINS", "cors_allowed_origins"
        ),
        description="Origins echoed back to callers. Empty means any origin.",
    )

    # Caller side
    relay_url: Optional[AnyHttpUrl] = Field(
        default=None,
        validation_alias=AliasChoices("RELAY_URL", "PROXY_URL", "relay_url"),
    )
    conversations_path: Path = Field(
        default_factory=lambda: Path("data/conversations.json"),
        validation_alias=AliasChoices("CONVERSATIONS_PATH", "conversations_path"),
    )
    turn_rules_path: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("TURN_RULES_PATH", "turn_rules_path"),
    )

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        """Accept a JSON array or a comma-separated list of origins."""

        if not isinstance(value, str):
            return value
        text = value.strip()
        if text.startswith("["):
            return json.loads(text)
        return [origin.strip() for origin in text.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
