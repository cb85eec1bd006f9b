"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class Config(BaseModel):
    """Root configuration for runboard."""

    data_dir: str = "~/.runboard"
    max_results: int = Field(default=50, gt=0)
    fallback_encoding: str | None = None
    default_timeout_ms: int | None = Field(default=None, gt=0)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def logdata_path(self) -> Path:
        """Root of the per-run result records."""
        return self.data_path / "logdata"

    @property
    def schedules_path(self) -> Path:
        return self.data_path / "scheduledata" / "schedules.json"
