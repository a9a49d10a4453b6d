from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic import computed_field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    data_dir: Path = Field(default=Path("var"), description="Root directory for application data")
    database_url: str = Field(
        default="sqlite:///var/app.db",
        description="SQLAlchemy database URL",
    )
    log_level: str = Field(default="INFO")

    runner_secret: str | None = Field(
        default=None,
        description="Shared secret authorizing continuation calls to the import runner",
    )
    runner_url: str = Field(
        default="http://127.0.0.1:8000/import-from-drive-runner",
        description="Endpoint the HTTP continuation scheduler posts payloads to",
    )
    continuation_retries: int = Field(default=3, ge=0)
    import_time_budget_seconds: float = Field(
        default=240.0,
        gt=0,
        description="Wall-clock budget per orchestrator invocation, below the platform limit",
    )

    google_service_account_json: str | None = Field(
        default=None,
        description="Service account key as raw JSON or base64 encoded JSON",
    )
    google_service_account_file: Path = Field(default=Path("service-account-key.json"))
    drive_page_size: int = Field(default=200, ge=1, le=1000)
    drive_order_by: str = Field(default="name")

    video_extensions: list[str] = Field(default=["mp4", "mov", "m4v", "avi", "mkv", "webm", "mpeg"])
    document_extensions: list[str] = Field(default=["pdf", "docx", "pptx"])
    quiz_name_pattern: str = Field(
        default=r"(?i)\b(quiz|teste?|prova|simulado|question[aá]rio|avalia[cç][aã]o)\b",
    )

    class Config:
        env_prefix = "APP_"
        env_file = ".env"

    @computed_field
    @property
    def storage_dir(self) -> Path:
        return self.data_dir / "storage"

    @computed_field
    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    return settings
