from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
ANALYSIS_PROVIDERS = {"openai", "gemini", "local"}
DEFAULT_MODELS = {
    "openai": "gpt-4.1-mini",
    "gemini": "gemini-1.5-flash",
    "local": "rules-v1",
}
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Settings(BaseModel):
    data_dir: Path = Path("data")
    max_upload_bytes: int = Field(default=DEFAULT_MAX_UPLOAD_BYTES, gt=0)
    analysis_provider: str = "openai"
    analysis_model: str | None = None
    analysis_api_key: str | None = None
    analysis_timeout_seconds: float = Field(default=60.0, gt=0)
    worker_count: int = Field(default=2, ge=1)
    queue_size: int = Field(default=32, ge=1)
    queue_put_timeout_seconds: float = Field(default=2.0, ge=0)
    log_level: str = "INFO"
    cors_allowed_origins: list[str] = Field(default_factory=list)

    @field_validator("analysis_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized == "chatgpt":
            normalized = "openai"
        if normalized not in ANALYSIS_PROVIDERS:
            raise ValueError(
                f"Unknown analysis provider '{value}'. "
                f"Available providers: {', '.join(sorted(ANALYSIS_PROVIDERS))}."
            )
        return normalized

    @property
    def staging_dir(self) -> Path:
        return self.data_dir / "staging"

    @property
    def experiments_dir(self) -> Path:
        return self.data_dir / "experiments"

    @property
    def resolved_model(self) -> str:
        return self.analysis_model or DEFAULT_MODELS[self.analysis_provider]


def _provider_api_key(provider: str) -> str | None:
    explicit = os.getenv("LAB_ANALYSIS_API_KEY")
    if explicit:
        return explicit
    if provider == "gemini":
        return os.getenv("GEMINI_API_KEY")
    return os.getenv("OPENAI_API_KEY")


def load_settings() -> Settings:
    provider = os.getenv("LAB_ANALYSIS_PROVIDER", "openai")
    cors_origins = [
        origin.strip()
        for origin in os.getenv("LAB_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
        if origin.strip()
    ]
    return Settings(
        data_dir=Path(os.getenv("LAB_DATA_DIR", "data")),
        max_upload_bytes=int(os.getenv("LAB_MAX_UPLOAD_BYTES", str(DEFAULT_MAX_UPLOAD_BYTES))),
        analysis_provider=provider,
        analysis_model=os.getenv("LAB_ANALYSIS_MODEL") or None,
        analysis_api_key=_provider_api_key(provider.strip().lower()),
        analysis_timeout_seconds=float(os.getenv("LAB_ANALYSIS_TIMEOUT_SECONDS", "60")),
        worker_count=int(os.getenv("LAB_WORKER_COUNT", "2")),
        queue_size=int(os.getenv("LAB_QUEUE_SIZE", "32")),
        queue_put_timeout_seconds=float(os.getenv("LAB_QUEUE_PUT_TIMEOUT_SECONDS", "2")),
        log_level=os.getenv("LAB_LOG_LEVEL", "INFO"),
        cors_allowed_origins=cors_origins,
    )


def configure_logging(level: str = "INFO") -> None:
    """Install a single console handler on the root logger."""

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in root.handlers[:]:
        if getattr(handler, "_labingest", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler._labingest = True  # type: ignore[attr-defined]
    root.addHandler(handler)
