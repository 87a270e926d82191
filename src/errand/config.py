"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Table store
    DB_PATH: str = "./data/errand.db"

    # Completion service
    COMPLETION_BACKEND: str = "openrouter"  # Options: openrouter, openai, anthropic
    COMPLETION_MODEL: str = "deepseek/deepseek-r1-distill-llama-70b:free"
    COMPLETION_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    TEMPERATURE: float = 0.2
    REQUEST_TIMEOUT: float = 60.0  # seconds

    # Agent loop
    MAX_ITERATIONS: int = 5
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY: float = 1.0  # seconds
    RETRY_MAX_DELAY: float = 10.0  # seconds
    EXECUTION_MODE: str = "sequential"  # Options: sequential, concurrent

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
