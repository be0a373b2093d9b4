"""
Configuration settings for the advisory ingestion pipeline
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Explicitly load the .env file so plain os.getenv callers see the same values
dotenv_path = Path(os.getenv('ADVISORY_DB_ENV_FILE', '.env'))
if dotenv_path.exists():
    load_dotenv(dotenv_path)


class Settings(BaseSettings):
    """Application settings"""

    # Document store (PostgreSQL)
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "advisory_db"
    DB_USER: str = "advisory_user"
    DB_PASSWORD: str = "advisory_pass"
    DB_MIN_CONNECTIONS: int = 1
    DB_POOL_SIZE: int = 10
    DB_INITIALIZE_SCHEMA: bool = True

    # Corpus source
    CORPUS_REPO_URL: str = "https://github.com/CVEProject/cvelist.git"
    CORPUS_LOCAL_PATH: str = "./tmp/cvelist"
    CORPUS_SUBTREE: str = "2025"
    CORPUS_BRANCH: str = "main"
    RECORD_EXTENSION: str = ".json"

    # Ingestion
    SYNC_MODE: str = "incremental"  # full | incremental
    BATCH_SIZE: int = 100
    MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_SECONDS: float = 0.05
    FAILURE_PREVIEW_LIMIT: int = 50
    SHOW_PROGRESS: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
