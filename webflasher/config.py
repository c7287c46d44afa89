"""Unified Application Configuration - telemetry server and flashing client settings"""

from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for the flash telemetry API and the serial flasher"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "ESP Web Flasher API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Server
    PY_HOST: str = "127.0.0.1"
    PY_PORT: int = 17890
    API_V1_PREFIX: str = "/api/v1"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    # Storage (flat JSON files)
    DATA_DIR: str = Field(
        default="./data",
        description="Directory holding counters, error log and rate limit table",
    )
    COUNTS_FILE: str = "flash-counts.json"
    ERRORS_FILE: str = "flash-errors.json"
    RATE_LIMIT_FILE: str = "rate-limits.json"
    MARKER_FILE: str = Field(
        default=".flash-secret",
        description="Deployment marker; the write endpoint answers 503 while it is missing or empty",
    )
    MAX_COUNTS_FILE_BYTES: int = 1024 * 1024
    MAX_ERRORS_FILE_BYTES: int = 5 * 1024 * 1024
    ERROR_LOG_MAX_ENTRIES: int = 500

    # Guard pipeline toggles
    CHECK_MARKER_FILE: bool = True
    CHECK_RATE_LIMIT: bool = True
    CHECK_PAYLOAD_SIZE: bool = True
    CHECK_HONEYPOT: bool = True
    CHECK_ORIGIN: bool = True
    CHECK_STORAGE_LIMITS: bool = True

    # Guard pipeline limits
    RATE_LIMIT_PER_MINUTE: int = 10
    RATE_LIMIT_PER_HOUR: int = 50
    RATE_LIMIT_SALT: str = Field(
        default="change-this-salt-in-production",
        description="Salt mixed into client IP hashes",
    )
    TRUST_PROXY_HEADERS: bool = False
    MAX_PAYLOAD_BYTES: int = 10 * 1024
    HONEYPOT_FIELDS: str = "website,email"
    ALLOWED_ORIGIN_HOSTS: str = "localhost,127.0.0.1"
    MAX_PROJECT_LENGTH: int = 100
    MAX_ACTION_LENGTH: int = 50
    MAX_ERROR_LENGTH: int = 1000
    MAX_CONTEXT_VALUE_LENGTH: int = 200
    MAX_CONTEXT_KEYS: int = 20

    # Flashing client
    ANALYTICS_ENABLED: bool = True
    TELEMETRY_URL: str = "http://127.0.0.1:17890/api/v1/flash"
    FIRMWARE_BASE_URL: str = Field(
        default="http://127.0.0.1:8000/",
        description="Base URL or local directory that holds the firmware/ folder",
    )
    PROJECTS_CONFIG: str = "config.json"
    PAGE_CONFIG: str = "page-config.json"
    SERIAL_PORT: str = ""
    FLASH_BAUD: int = 115200
    ESPTOOL_COMMAND: str = ""
    AUDIO_PLAYER_COMMAND: str = "ffplay -nodisp -autoexit -loglevel quiet -volume {volume} {path}"
    LANGUAGE: str = ""  # empty defers to page-config.json defaultLanguage

    @property
    def data_path(self) -> Path:
        return Path(self.DATA_DIR).expanduser()

    @property
    def counts_path(self) -> Path:
        return self.data_path / self.COUNTS_FILE

    @property
    def errors_path(self) -> Path:
        return self.data_path / self.ERRORS_FILE

    @property
    def rate_limit_path(self) -> Path:
        return self.data_path / self.RATE_LIMIT_FILE

    @property
    def marker_path(self) -> Path:
        return self.data_path / self.MARKER_FILE

    @property
    def honeypot_fields_list(self) -> List[str]:
        """Parse honeypot field names from comma-separated string"""
        return [f.strip() for f in self.HONEYPOT_FIELDS.split(",") if f.strip()]

    @property
    def allowed_origin_hosts_list(self) -> List[str]:
        """Parse allowed origin hosts from comma-separated string"""
        return [h.strip().lower() for h in self.ALLOWED_ORIGIN_HOSTS.split(",") if h.strip()]


settings = Settings()
