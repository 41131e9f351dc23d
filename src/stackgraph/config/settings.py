"""
Application settings using Pydantic.

Provides environment-based configuration loading with STACKGRAPH_ prefix.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings

from stackgraph.engine.options import ExecutorOptions


class Settings(BaseSettings):
    """Application settings."""

    # State storage
    state_backend: Literal["file", "memory", "s3"] = "file"
    state_dir: Path = Path(".stackgraph")
    state_bucket: str | None = None
    state_prefix: str = "stackgraph"

    # AWS
    aws_region: str = "us-east-1"

    # Locking
    lock_backend: Literal["file", "redis", "memory", "none"] = "file"
    redis_url: str = "redis://localhost:6379/0"
    lock_ttl_seconds: int = 3600

    # Providers
    provider: str = "simulated"

    # Execution
    max_concurrency: int | None = None
    fail_fast: bool = True
    create_before_delete: bool = False

    # Logging
    log_level: str = "WARNING"
    log_json: bool = False

    @field_validator("max_concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("max_concurrency must be at least 1")
        return value

    def executor_options(self) -> ExecutorOptions:
        return ExecutorOptions(max_concurrency=self.max_concurrency, fail_fast=self.fail_fast)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "STACKGRAPH_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
