"""Configuration management for EncounterScope."""

from pydantic_settings import BaseSettings

from encounterscope.pipeline.coordinates import CoordinateResolverConfig
from encounterscope.pipeline.session import SessionManagerConfig
from encounterscope.pipeline.stage_chunk import ChunkProcessorConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Only the CLI reads these. Library components take their configuration
    objects explicitly (see the ``*_config`` helpers below).
    """

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "encounterscope"
    postgres_password: str = "localdev"
    postgres_db: str = "encounterscope"

    # Inference (Ollama)
    ollama_host: str = "http://localhost:11434"
    inference_model: str = "qwen2.5:14b-instruct"
    inference_max_output_tokens: int = 8192
    inference_temperature: float = 0.1
    inference_timeout_seconds: float = 300.0
    input_cost_per_million: float = 0.0
    output_cost_per_million: float = 0.0

    # Chunking
    chunk_size: int = 50
    enhanced_ocr_format: bool = True

    # Retry
    max_chunk_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0

    # Coordinate resolution
    coordinate_fuzzy_threshold: float = 0.85
    max_page_height: float = 3300.0
    min_text_height: float = 8.0
    max_text_height: float = 500.0
    context_window_px: float = 100.0

    # Concurrency
    reconcile_concurrency: int = 4
    max_concurrent_sessions: int = 2

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Construct async database URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def sync_database_url(self) -> str:
        """Construct sync database URL for Alembic."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    def coordinate_config(self) -> CoordinateResolverConfig:
        return CoordinateResolverConfig(
            fuzzy_threshold=self.coordinate_fuzzy_threshold,
            max_page_height=self.max_page_height,
            min_text_height=self.min_text_height,
            max_text_height=self.max_text_height,
            context_window_px=self.context_window_px,
        )

    def chunk_config(self) -> ChunkProcessorConfig:
        return ChunkProcessorConfig(
            max_output_tokens=self.inference_max_output_tokens,
            temperature=self.inference_temperature,
            enhanced_ocr_format=self.enhanced_ocr_format,
        )

    def session_config(self) -> SessionManagerConfig:
        return SessionManagerConfig(
            chunk_size=self.chunk_size,
            max_chunk_attempts=self.max_chunk_attempts,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
