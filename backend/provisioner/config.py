"""
Application configuration management.
Centralized settings with environment variable support and validation.
"""

import tempfile
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Provisioner settings with validation and environment variable support.

    Environment variables override defaults:
        export INTERPRETER_EXECUTABLE=py
        export PACKAGE_SPEC="cnocr[ort-gpu]"
        export IGNORE_ENVIRONMENT_CHECK=true
    """

    # Environment
    ENV: Literal["development", "production"] = "development"

    # API Server Configuration
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "./logs"
    INSTALL_LOG_KEEP: int = 20

    # Rate limiting (slowapi)
    RATE_LIMIT_ENABLED: bool = True

    # API Authentication
    REQUIRE_AUTH: bool = False
    ALLOWED_API_KEYS: list[str] = [
        "dev-key-12345",      # Development key
    ]

    # ═══════════════════════════════════════════════════════════════════════
    # INTERPRETER
    # ═══════════════════════════════════════════════════════════════════════

    INTERPRETER_EXECUTABLE: str = "python"
    INTERPRETER_VERSION_ARGS: list[str] = ["--version"]
    # Unattended per-user install, adds python to the user PATH
    INTERPRETER_INSTALLER_URL: Optional[str] = (
        "https://www.python.org/ftp/python/3.11.9/python-3.11.9-amd64.exe"
    )
    INTERPRETER_INSTALLER_ARGS: list[str] = [
        "/quiet",
        "InstallAllUsers=0",
        "PrependPath=1",
        "Include_test=0",
    ]
    # Used instead of the installer download when set (e.g. a package manager call)
    INTERPRETER_INSTALL_COMMAND: list[str] = []

    # ═══════════════════════════════════════════════════════════════════════
    # PACKAGE
    # ═══════════════════════════════════════════════════════════════════════

    PACKAGE_NAME: str = "cnocr"
    PACKAGE_IMPORT_NAME: str = "cnocr"
    PACKAGE_SPEC: str = "cnocr[ort-cpu]"
    PACKAGE_INDEX_URL: Optional[str] = None
    PACKAGE_INSTALL_ATTEMPTS: int = 2
    PACKAGE_RETRY_DELAY_SECONDS: float = 2.0

    # ═══════════════════════════════════════════════════════════════════════
    # MODEL
    # ═══════════════════════════════════════════════════════════════════════

    MODEL_DIR_NAME: str = "cnocr"
    MODEL_VERSION: str = "2.3"
    MODEL_FILE_EXTENSION: str = ".onnx"
    MODEL_SEARCH_PATHS: list[str] = []
    MODEL_INSTALL_DIR: Optional[str] = None  # defaults to <appdata>/cnocr
    # Archive with the model bundle; when unset the package fetches its own models
    MODEL_ARCHIVE_URL: Optional[str] = None
    MODEL_HOME_ENV_VAR: str = "CNOCR_HOME"
    MODEL_FETCH_CODE: str = "from cnocr import CnOcr; CnOcr()"

    # ═══════════════════════════════════════════════════════════════════════
    # PROBES, PROGRESS, CLEANUP, DOWNLOADS
    # ═══════════════════════════════════════════════════════════════════════

    PROBE_TIMEOUT_SECONDS: float = 15.0
    PROBE_RETRY_DELAY_SECONDS: float = 2.0

    PROGRESS_TICK_SECONDS: float = 1.0
    EXPECTED_DURATION_INTERPRETER_SECONDS: float = 240.0
    EXPECTED_DURATION_PACKAGE_SECONDS: float = 150.0
    EXPECTED_DURATION_MODEL_SECONDS: float = 90.0

    CLEANUP_MAX_ATTEMPTS: int = 5
    CLEANUP_RETRY_DELAY_SECONDS: float = 0.5

    DOWNLOAD_TIMEOUT_SECONDS: float = 30.0
    DOWNLOAD_CHUNK_SIZE: int = 1024 * 1024
    DOWNLOAD_MAX_ATTEMPTS: int = 3
    DOWNLOAD_RETRY_DELAY_SECONDS: float = 1.0

    TEMP_DIR: str = str(Path(tempfile.gettempdir()) / "ocr-provisioner")

    # Startup / gating
    CHECK_ON_STARTUP: bool = True
    IGNORE_ENVIRONMENT_CHECK: bool = False

    # Manual installation guides surfaced to the presentation layer
    INTERPRETER_GUIDE_URL: str = "https://www.python.org/downloads/"
    PACKAGE_GUIDE_URL: str = "https://cnocr.readthedocs.io/zh-cn/stable/install/"
    MODEL_GUIDE_URL: str = "https://github.com/breezedeus/cnocr"

    # ═══════════════════════════════════════════════════════════════════════
    # COMPUTED PROPERTIES
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def IS_DEVELOPMENT(self) -> bool:
        """Check if running in development mode."""
        return self.ENV == "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
