"""Runtime configuration read from ``JOBCTL_*`` environment variables."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """System configuration."""

    model_config = SettingsConfigDict(env_prefix="JOBCTL_")

    data_dir: str = ".jobctl"
    poll_period: float = Field(default=0.01, gt=0)  # seconds between dispatcher ticks
    hold_delay: float = Field(default=0.5, ge=0)  # extra sleep when nothing is admissible
    cron_period: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=8, gt=0)
    log_level: str = "INFO"
    log_json: Optional[bool] = None
