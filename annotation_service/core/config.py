from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from pathlib import Path
import logging
import os

PACKAGE_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    PROJECT_NAME: str = "Annotation Service"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Default values that can be overridden by environment variables
    ALLOWED_ORIGINS: List[str] = ["*"]  # In production, specify actual domains
    ALLOWED_ORIGIN_REGEX: Optional[str] = None
    STORAGE_PATH: str = os.getenv("STORAGE_PATH", "./storage")
    DATABASE_PATH: Optional[str] = None
    RESOURCES_PATH: str = str(PACKAGE_ROOT / "resources")

    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # Continuations: "celery" enqueues a worker task, "http" posts to the
    # continuation endpoint of SERVICE_BASE_URL
    CONTINUATION_MODE: str = "celery"
    SERVICE_BASE_URL: str = "http://localhost:8000"
    CONTINUATION_TIMEOUT_SECONDS: float = 3.0

    # Jobs
    JOB_CHUNK_SIZE: int = 50
    MAX_CHUNK_SIZE: int = 500
    CACHE_WRITE_THRESHOLD: float = 0.95

    # Layer 2: external NLP service
    NLP_SERVICE_URL: Optional[str] = None
    NLP_HEALTH_TIMEOUT_SECONDS: float = 2.0
    NLP_REQUEST_TIMEOUT_SECONDS: float = 5.0
    NLP_RETRY_ATTEMPTS: int = 1
    NLP_RETRY_BACKOFF_SECONDS: float = 0.5

    # Layer 3: semantic classifier (chat completion endpoint)
    CLASSIFIER_API_URL: Optional[str] = None
    CLASSIFIER_API_KEY: Optional[str] = None
    CLASSIFIER_MODEL: str = "google/gemini-2.5-flash"
    CLASSIFIER_TIMEOUT_SECONDS: float = 30.0
    CLASSIFIER_TEMPERATURE: float = 0.2
    CLASSIFIER_MAX_TOKENS: int = 2000
    SEMANTIC_BATCH_SIZE: int = 15
    SEMANTIC_BATCH_DELAY_SECONDS: float = 1.5
    FALLBACK_CONFIDENCE: float = 0.5
    RECLASSIFY_CONFIDENCE_THRESHOLD: float = 0.8

    # Watchdog
    STALL_THRESHOLD_SECONDS: int = 600
    MAX_AUTO_RESUME_ATTEMPTS: int = 3
    WATCHDOG_INTERVAL_SECONDS: int = 60
    WATCHDOG_RESUME_COOLDOWN_SECONDS: int = 120
    WATCHDOG_RESUME_LEASE_SECONDS: int = 300

    # Emergency kill switch (redis flag)
    KILL_SWITCH_ENABLED: bool = False
    KILL_SWITCH_TTL_SECONDS: int = 30 * 60

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env")

    @property
    def database_path(self) -> Path:
        if self.DATABASE_PATH:
            return Path(self.DATABASE_PATH)
        return Path(self.STORAGE_PATH) / "annotation.sqlite3"


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the API process, workers and the CLI"""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
