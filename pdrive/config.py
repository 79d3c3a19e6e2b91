"""
pdrive Configuration

Loads the endpoint, token and bucket from a JSON file in the platform config
directory, with environment variable overrides. A missing file is created as
a template so the user knows what to fill in.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

import click
from pydantic import BaseModel, Field, ValidationError, field_validator

from pdrive.exceptions import ConfigError
from pdrive.models import DEFAULT_PART_SIZE, RetryPolicy, UploadSettings, UploadTarget

logger = logging.getLogger(__name__)

APP_NAME = "pdrive"
CONFIG_FILENAME = "config.json"

# Environment variables that override file values
ENV_OVERRIDES: Dict[str, str] = {
    "PDRIVE_ENDPOINT": "endpoint",
    "PDRIVE_TOKEN": "token",
    "PDRIVE_BUCKET": "bucket",
}

TEMPLATE = {
    "endpoint": "https://storage.example.com",
    "token": "",
    "bucket": "",
    "concurrency": 2,
}


def app_dir() -> Path:
    """Platform config directory for pdrive."""
    return Path(click.get_app_dir(APP_NAME))


def default_config_path() -> Path:
    return app_dir() / CONFIG_FILENAME


def default_sessions_dir() -> Path:
    return app_dir() / "sessions"


class Config(BaseModel):
    """Resolved client configuration."""

    endpoint: str = Field(min_length=1, description="Base URL of the storage endpoint")
    token: str = Field(min_length=1, repr=False, description="Bearer token")
    bucket: str = Field(min_length=1, description="Bucket name")
    concurrency: int = Field(default=2, ge=1, le=64, description="Parts uploaded in parallel")
    part_size: int = Field(default=DEFAULT_PART_SIZE, gt=0, description="Preferred part size in bytes")
    part_retries: int = Field(default=3, ge=0)
    max_retries: int = Field(default=5, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    timeout: float = Field(default=300.0, gt=0)
    sessions_dir: Optional[str] = None

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        if not value.startswith(("https://", "http://")):
            raise ValueError("endpoint must be an http(s) URL")
        return value.rstrip("/")

    def to_settings(self, concurrency: Optional[int] = None) -> UploadSettings:
        return UploadSettings(
            part_size=self.part_size,
            concurrency=concurrency or self.concurrency,
            part_retries=self.part_retries,
            retry=self.retry_policy(),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def target(self, object_key: str) -> UploadTarget:
        return UploadTarget(
            endpoint=self.endpoint,
            token=self.token,
            bucket=self.bucket,
            object_key=object_key,
        )

    def session_store_dir(self) -> Path:
        return Path(self.sessions_dir) if self.sessions_dir else default_sessions_dir()


def write_template(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(TEMPLATE, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote config template to %s", path)


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Config:
    """
    Load and validate the configuration.

    Args:
        path: Config file (defaults to the platform config directory)
        environ: Environment to read overrides from (defaults to os.environ)

    Returns:
        Validated Config

    Raises:
        ConfigError: If the file is missing, unreadable or incomplete
    """
    path = Path(path) if path else default_config_path()
    environ = os.environ if environ is None else environ

    data: dict = {}
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must contain a JSON object")
    elif not any(env in environ for env in ENV_OVERRIDES):
        try:
            write_template(path)
        except OSError as e:
            raise ConfigError(f"No config at {path} and the template could not be written: {e}") from e
        raise ConfigError(f"No config found. Fill in endpoint, token and bucket in {path}")

    for env, field in ENV_OVERRIDES.items():
        if environ.get(env):
            data[field] = environ[env]

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid config {path}: {problems}") from e
