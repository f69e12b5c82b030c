from datetime import timedelta
from functools import lru_cache
from typing import Final, Literal

from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gateway.core.errors import ConfigInvalid

# SigV4 presigned URLs cannot outlive seven days.
MAX_URL_EXPIRY: Final[int] = int(timedelta(days=7).total_seconds())

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_ignore_empty=True,
        validate_default=True,
        extra="ignore",
    )

    minio_endpoint: str = Field(default="localhost:9000", alias="MINIO_ENDPOINT")
    minio_access_key: str = Field(default="", alias="MINIO_ACCESS_KEY")
    minio_secret_key: str = Field(default="", alias="MINIO_SECRET_KEY")
    minio_use_ssl: bool = Field(default=False, alias="MINIO_USE_SSL")
    minio_bucket: str = Field(default="mybucket", alias="MINIO_BUCKET")
    minio_location: str = Field(default="us-east-1", alias="MINIO_LOCATION")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8080, alias="PORT")
    log_level: LogLevel = Field(default="INFO", alias="LOG_LEVEL")

    upload_max_bytes: int = Field(default=10 << 20, gt=0, alias="UPLOAD_MAX_BYTES")
    upload_prefix: str = Field(default="uploads/", alias="UPLOAD_PREFIX")
    upload_key_strategy: Literal["timestamp", "unique"] = Field(
        default="timestamp", alias="UPLOAD_KEY_STRATEGY"
    )
    upload_url_ttl: int = Field(
        default=24 * 3600, gt=0, le=MAX_URL_EXPIRY, alias="UPLOAD_URL_TTL"
    )
    download_url_ttl: int = Field(
        default=3600, gt=0, le=MAX_URL_EXPIRY, alias="DOWNLOAD_URL_TTL"
    )
    download_chunk_size: int = Field(default=64 * 1024, gt=0, alias="DOWNLOAD_CHUNK_SIZE")

    backend_timeout: float = Field(default=30.0, gt=0, alias="BACKEND_TIMEOUT")
    backend_max_attempts: int = Field(default=3, ge=1, alias="BACKEND_MAX_ATTEMPTS")

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @field_validator(
        "minio_endpoint", "minio_access_key", "minio_secret_key", "minio_bucket"
    )
    @classmethod
    def _required(cls, value: str, info: ValidationInfo) -> str:
        value = value.strip()
        if not value:
            raise ValueError(f"{info.field_name.upper()} is required")
        return value

    @property
    def endpoint_url(self) -> str:
        if "://" in self.minio_endpoint:
            return self.minio_endpoint
        scheme = "https" if self.minio_use_ssl else "http"
        return f"{scheme}://{self.minio_endpoint}"


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigInvalid(str(exc)) from exc
