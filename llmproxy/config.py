# Configuration for the OpenAI-compatible LLM gateway

from functools import lru_cache
from typing import Dict, Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings loaded from environment variables (and an optional .env file).
    Model maps are JSON objects, e.g. DEEPSEEK_MODELS='{"gpt-4o": "deepseek-chat"}'.
    """
    model_config = SettingsConfigDict(
        case_sensitive=True,
        extra="ignore",
        env_file=".env",
        populate_by_name=True,
    )

    # Explicit backend selection; inferred from which provider is configured when unset
    BACKEND: Optional[Literal["deepseek", "openrouter", "ollama"]] = Field(None, alias="BACKEND")

    # Secret callers must present; defaults to the selected provider's API key
    GATEWAY_API_KEY: Optional[str] = Field(None, description="API key for the gateway", alias="GATEWAY_API_KEY")

    # DeepSeek
    DEEPSEEK_API_KEY: Optional[str] = Field(None, alias="DEEPSEEK_API_KEY")
    DEEPSEEK_ENDPOINT: str = Field("https://api.deepseek.com", alias="DEEPSEEK_ENDPOINT")
    DEEPSEEK_DEFAULT_MODEL: str = Field("deepseek-chat", alias="DEEPSEEK_DEFAULT_MODEL")
    DEEPSEEK_MODELS: Dict[str, str] = Field(default_factory=dict, alias="DEEPSEEK_MODELS")

    # OpenRouter
    OPENROUTER_API_KEY: Optional[str] = Field(None, alias="OPENROUTER_API_KEY")
    OPENROUTER_ENDPOINT: str = Field("https://openrouter.ai/api/v1", alias="OPENROUTER_ENDPOINT")
    OPENROUTER_DEFAULT_MODEL: str = Field("deepseek/deepseek-chat", alias="OPENROUTER_DEFAULT_MODEL")
    OPENROUTER_MODELS: Dict[str, str] = Field(default_factory=dict, alias="OPENROUTER_MODELS")
    OPENROUTER_REFERER: Optional[str] = Field(None, alias="OPENROUTER_REFERER")
    OPENROUTER_TITLE: Optional[str] = Field(None, alias="OPENROUTER_TITLE")

    # Ollama (OLLAMA_API_ENDPOINT is the older name)
    OLLAMA_ENDPOINT: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("OLLAMA_ENDPOINT", "OLLAMA_API_ENDPOINT"),
    )
    OLLAMA_API_KEY: Optional[str] = Field(None, alias="OLLAMA_API_KEY")
    OLLAMA_DEFAULT_MODEL: str = Field("llama2", alias="OLLAMA_DEFAULT_MODEL")
    OLLAMA_MODELS: Dict[str, str] = Field(default_factory=dict, alias="OLLAMA_MODELS")

    # Upstream timeout in seconds (whole call when unary, connect/write only when streaming)
    UPSTREAM_TIMEOUT: float = Field(30.0, validation_alias=AliasChoices("UPSTREAM_TIMEOUT", "TIMEOUT"))
    HEARTBEAT_INTERVAL: float = Field(15.0, alias="HEARTBEAT_INTERVAL")

    # Server
    HOST: str = Field("0.0.0.0", alias="HOST")
    PORT: int = Field(9000, alias="PORT")

    # Logging
    LOG_LEVEL: str = Field("INFO", alias="LOG_LEVEL")
    LOG_REQUEST_BODY_MAX_LENGTH: int = Field(40000, alias="LOG_REQUEST_BODY_MAX_LENGTH")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """
    Return the token from an ``Authorization: Bearer <key>`` header, or None.
    """
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
