"""Application configuration using Pydantic Settings."""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    RESULTS_DIR: str = "./test-results"
    WORKSPACE_CLEANUP: bool = False  # Remove script + entrypoint once a run is terminal
    MAX_SCRIPT_BYTES: int = 1024 * 1024

    # Docker
    DOCKER_BASE_URL: str = ""  # Empty means docker.from_env()
    DOCKER_TIMEOUT: int = 60
    DOCKER_CONNECT_ATTEMPTS: int = 3
    CONTAINER_NAME_PREFIX: str = "testbed-run"
    DEFAULT_IMAGE: str = "ubuntu:22.04"

    # Notifications
    EVENT_QUEUE_SIZE: int = 1000

    # Server
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    SHUTDOWN_TIMEOUT: int = 30  # Seconds to let in-flight runs finish

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()
