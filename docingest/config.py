"""Configuration management using Pydantic Settings."""
from functools import lru_cache
from typing import Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "docingest"
    APP_ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Upload validation
    MAX_FILE_SIZE: int = 50 * 1024 * 1024
    MALWARE_SCAN_BYTES: int = 10_000

    # Coordinator
    MAX_CONCURRENT_JOBS: int = 10
    JOB_TIMEOUT_SECONDS: float = 300.0
    EXTRACTION_TIMEOUT_SECONDS: float = 60.0
    CHUNKING_TIMEOUT_SECONDS: float = 30.0
    TEMP_DIR: str = "secure_temp"
    TEMP_FILE_TTL_SECONDS: float = 30 * 60
    CLEANUP_INTERVAL_SECONDS: float = 5 * 60

    # Extraction limits
    MAX_TEXT_LENGTH: int = 10 * 1024 * 1024
    MAX_PDF_PAGES: int = 1000
    MAX_SHEETS: int = 50
    MAX_SHEET_ROWS: int = 10_000
    MAX_SHEET_CHARS: int = 100_000
    MAX_SLIDES: int = 500
    MAX_SLIDE_CHARS: int = 10_000

    # Extraction cache
    EXTRACTION_CACHE_SIZE: int = 100
    EXTRACTION_CACHE_TTL_SECONDS: float = 30 * 60

    # Tokenization and chunking
    DEFAULT_MODEL: str = "gpt-4"
    DEFAULT_MAX_TOKENS_PER_CHUNK: int = 6000
    CHUNK_OVERLAP_TOKENS: int = 200
    MAX_CHUNK_COUNT: int = 100
    MODEL_RATIO_OVERRIDES: dict[str, float] = Field(
        default_factory=dict,
        description="Per-model approximation ratio overrides, e.g. {\"claude-3-opus\": 1.15}",
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v_upper

    @field_validator("DEFAULT_MAX_TOKENS_PER_CHUNK")
    @classmethod
    def validate_chunk_size(cls, v):
        """Chunk budget must stay inside the range the chunker accepts."""
        if not 100 <= v <= 32000:
            raise ValueError("DEFAULT_MAX_TOKENS_PER_CHUNK must be between 100 and 32000")
        return v

    @field_validator("MODEL_RATIO_OVERRIDES")
    @classmethod
    def validate_ratio_overrides(cls, v):
        """Normalize model keys and reject non-positive ratios."""
        normalized = {}
        for model, ratio in v.items():
            if ratio <= 0:
                raise ValueError(f"Approximation ratio for {model} must be positive")
            normalized[model.strip().lower()] = ratio
        return normalized


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
