"""Settings for the room chat core."""

from typing import Optional, Tuple, Union

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    service_name: str = _env_field("roomchat-core", "SERVICE_NAME")
    log_level: str = _env_field("INFO", "LOG_LEVEL")
    log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")

    # Backing stores: "memory" keeps everything in-process (tests, local dev)
    document_backend: str = _env_field("memory", "DOCUMENT_BACKEND")
    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
    blob_backend: str = _env_field("memory", "BLOB_BACKEND")
    blob_base_url: str = _env_field("http://localhost:8001/blobs", "BLOB_BASE_URL")
    blob_root: str = _env_field("var/blobs", "BLOB_ROOT")

    # Image recompression before upload; quality is on Pillow's JPEG scale
    image_max_dimension: int = _env_field(1920, "IMAGE_MAX_DIMENSION")
    image_quality: int = _env_field(80, "IMAGE_QUALITY")
    upload_attempts: int = _env_field(3, "UPLOAD_ATTEMPTS")
    upload_retry_backoff_seconds: float = _env_field(0.5, "UPLOAD_RETRY_BACKOFF_SECONDS")
    upload_timeout_seconds: float = _env_field(60.0, "UPLOAD_TIMEOUT_SECONDS")

    translation_api_key: Optional[str] = _env_field(None, "TRANSLATION_API_KEY", "GOOGLE_API_KEY")
    translation_endpoint: str = _env_field(
        "https://translation.googleapis.com/language/translate/v2",
        "TRANSLATION_ENDPOINT",
    )
    translation_default_language: str = _env_field("es", "TRANSLATION_DEFAULT_LANGUAGE")
    translation_languages: Union[str, Tuple[str, ...]] = _env_field(("es", "en"), "TRANSLATION_LANGUAGES")

    speech_api_key: Optional[str] = _env_field(None, "SPEECH_API_KEY", "GOOGLE_API_KEY")
    speech_endpoint: str = _env_field(
        "https://speech.googleapis.com/v1/speech:recognize",
        "SPEECH_ENDPOINT",
    )
    speech_encoding: str = _env_field("WEBM_OPUS", "SPEECH_ENCODING")
    speech_sample_rate_hertz: int = _env_field(48000, "SPEECH_SAMPLE_RATE_HERTZ")
    speech_language_code: str = _env_field("en-US", "SPEECH_LANGUAGE_CODE")

    external_timeout_seconds: float = _env_field(10.0, "EXTERNAL_TIMEOUT_SECONDS")
    avatar_base_url: str = _env_field("https://api.dicebear.com/9.x", "AVATAR_BASE_URL")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("translation_languages", mode="before")
    def _split_languages(cls, value):  # type: ignore[override]
        if value in (None, ""):
            return ()
        if isinstance(value, str):
            return tuple(part.strip().lower() for part in value.split(",") if part.strip())
        if isinstance(value, (list, tuple, set)):
            return tuple(str(item).strip().lower() for item in value if str(item).strip())
        return ()

    @field_validator("document_backend", "blob_backend", mode="before")
    def _normalise_backend(cls, value):  # type: ignore[override]
        return str(value or "memory").strip().lower()

    @field_validator("log_level", mode="before")
    def _normalise_level(cls, value):  # type: ignore[override]
        return str(value or "INFO").strip().upper()
