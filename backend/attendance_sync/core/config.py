from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import List


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # Application settings
    APP_NAME: str = "Attendance Sync Service"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./attendance_sync.db"
    DATABASE_ECHO: bool = False

    # Upstream SIS settings
    SIS_BASE_URL: str = "https://sis.district.example.org/api/v5"
    SIS_API_KEY: str = ""
    SIS_TIMEOUT_SECONDS: int = 30
    SIS_DEFAULT_SCHOOL_CODES: str = ""  # comma separated

    # One breaker guards one upstream dependency
    CIRCUIT_BREAKER_NAME: str = "sis_attendance"

    @property
    def default_school_codes(self) -> List[str]:
        return [code.strip() for code in self.SIS_DEFAULT_SCHOOL_CODES.split(",") if code.strip()]

    @field_validator("SIS_BASE_URL")
    @classmethod
    def validate_sis_base_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("SIS_BASE_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v


settings = Settings()
