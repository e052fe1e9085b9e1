"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Remote store
    store_backend: str = os.getenv("STORE_BACKEND", "sqlite")  # "sqlite" or "websocket"
    store_url: str = os.getenv("STORE_URL", "http://localhost:8765")
    store_token: str = os.getenv("STORE_TOKEN", "")
    sqlite_path: str = os.getenv("SQLITE_PATH", "data/goals.db")

    # Sync behaviour
    write_quiet_period: float = float(
        os.getenv("WRITE_QUIET_PERIOD", "1.0")
    )  # seconds a debounced write waits for the burst to end
    clear_deadline_on_complete: bool = False

    # Server
    server_host: str = os.getenv("SERVER_HOST", "0.0.0.0")
    server_port: int = int(os.getenv("SERVER_PORT", "8000"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
