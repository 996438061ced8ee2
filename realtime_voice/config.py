import logging
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Only needed by the relay server and the ephemeral key provider
    openai_api_key: Optional[str] = None

    # Upstream endpoints
    realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    realtime_socket_url: str = "wss://api.openai.com/v1/realtime"
    realtime_negotiation_url: str = "https://api.openai.com/v1/realtime"
    auth_mode: Literal["header", "subprotocol", "first_message"] = "header"
    open_timeout: float = 30.0
    stun_server: str = "stun:stun.l.google.com:19302"

    # Reconnection policy
    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 30000
    max_reconnect_attempts: int = 5

    # Relay server
    relay_token: Optional[str] = None
    relay_instructions: str = "You are a helpful voice assistant."
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler for processes that run the relay."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Frame-level chatter from websockets is noisy at DEBUG
    logging.getLogger("websockets").setLevel(logging.WARNING)
