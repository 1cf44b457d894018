# config.py
"""Configuration settings for the Reader Panel manuscript analysis system.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class ReaderPanelSettings(BaseSettings):
    """Full configuration for the Reader Panel system."""

    # API and Model Configuration
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    OPENAI_API_KEY: str = ""
    DEFAULT_MODEL: str = "gpt-4o-mini"

    # Temperature Settings
    TEMPERATURE_STANDARD: float = 0.3
    TEMPERATURE_RAW_REACTION: float = 0.4
    TEMPERATURE_BUSINESS_INSIGHT: float = 0.4
    TEMPERATURE_LAYER_CORRELATION: float = 0.4

    # Output budgets per template family
    MAX_TOKENS_STANDARD: int = 800
    MAX_TOKENS_TWO_LAYER: int = 1000

    # LLM Call Settings
    HTTPX_TIMEOUT: float = 60.0
    LLM_RETRY_ATTEMPTS: int = 3
    LLM_RETRY_DELAY_SECONDS: float = 1.0

    # Scheduling
    ANALYSIS_BATCH_SIZE: int = 5
    BATCH_DELAY_SECONDS: float = 0.2
    TWO_LAYER_CHUNK_DELAY_SECONDS: float = 0.3
    MAX_CONCURRENT_JOBS: int = 3

    # Chunking
    MAX_WORDS_PER_CHUNK: int = 400
    MIN_WORDS_PER_CHUNK: int = 150
    TWO_LAYER_MAX_WORDS_PER_CHUNK: int = 300
    TWO_LAYER_MIN_WORDS_PER_CHUNK: int = 100
    PRESERVE_STRUCTURE: bool = True
    MIN_PARAGRAPH_CHARS: int = 20
    MIN_STRUCTURAL_HEADINGS: int = 3

    # Prompt content
    RATING_SCALE: int = 10
    FEEDBACK_WORD_LIMIT: int = 150

    # Input validation (upstream collaborator)
    MIN_MANUSCRIPT_CHARS: int = 50

    # Output and File Paths
    BASE_OUTPUT_DIR: str = "reader_panel_output"
    JOB_STORE_DIR: str = "jobs"
    RESULTS_FILE: str = "analysis_results.json"
    DEFAULT_ARCHETYPES_FILE: str = os.path.join(
        os.path.dirname(os.path.abspath(__file__)), "data", "default_archetypes.yaml"
    )

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="READER_PANEL_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "reader_panel.log"
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def validate_ranges(self) -> ReaderPanelSettings:
        if self.RATING_SCALE not in (5, 10):
            raise ValueError("RATING_SCALE must be 5 or 10")
        if self.MIN_WORDS_PER_CHUNK > self.MAX_WORDS_PER_CHUNK:
            raise ValueError("MIN_WORDS_PER_CHUNK cannot exceed MAX_WORDS_PER_CHUNK")
        if self.ANALYSIS_BATCH_SIZE < 1:
            raise ValueError("ANALYSIS_BATCH_SIZE must be at least 1")
        if self.LLM_RETRY_ATTEMPTS < 1:
            raise ValueError("LLM_RETRY_ATTEMPTS must be at least 1")
        if not self.OPENAI_API_KEY:
            logger.warning(
                "OPENAI_API_KEY is not set. Completion requests will fail until it is provided."
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True, extra="ignore"
    )


settings = ReaderPanelSettings()


JOB_STORE_PATH = os.path.join(settings.BASE_OUTPUT_DIR, settings.JOB_STORE_DIR)
RESULTS_FILE_PATH = os.path.join(settings.BASE_OUTPUT_DIR, settings.RESULTS_FILE)
