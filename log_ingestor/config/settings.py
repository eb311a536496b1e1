"""
config/settings.py
==================
Runtime configuration, read once from the environment.

A `.env` file in the working directory is loaded first (python-dotenv), so
local runs and docker-compose share the same variable names:

  POSTGRES_DB / POSTGRES_USER / POSTGRES_PASSWORD / POSTGRES_HOST / POSTGRES_PORT
  AWS_REGION / AWS_ENDPOINT / AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY
  INGESTOR_STUCK_TIMEOUT        stale threshold, milliseconds (default 5 min)
  INGESTOR_PAGE_SIZE            jobs claimed per page (default 50)
  INGESTOR_BATCH_SIZE           records per DB write (default 50)
  INGESTOR_MAX_ATTEMPTS         decompression attempts (default 3)
  INGESTOR_RETRY_DELAY_SECONDS  wait between attempts (default 2)
  METRICS_ENABLED / METRICS_PORT
  LOG_LEVEL
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    postgres_db: str = "logs"
    postgres_user: str = "logs"
    postgres_password: str = "logs"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    aws_region: str = "us-east-1"
    aws_endpoint: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    stuck_timeout_ms: int = 5 * 60 * 1000
    page_size: int = 50
    batch_size: int = 50
    max_attempts: int = 3
    retry_delay_seconds: float = 2.0

    metrics_enabled: bool = False
    metrics_port: int = 8000
    log_level: str = "INFO"

    @property
    def dsn(self) -> str:
        return (
            f"dbname={self.postgres_db} "
            f"user={self.postgres_user} "
            f"password={self.postgres_password} "
            f"host={self.postgres_host} "
            f"port={self.postgres_port}"
        )

    @property
    def stale_after_seconds(self) -> float:
        return self.stuck_timeout_ms / 1000.0


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from `environ` (default: os.environ after load_dotenv()).
    A malformed number raises ValueError, which the CLI turns into exit code 1.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    def get(name: str, default):
        value = environ.get(name)
        return default if value in (None, "") else value

    settings = Settings(
        postgres_db=get("POSTGRES_DB", Settings.postgres_db),
        postgres_user=get("POSTGRES_USER", Settings.postgres_user),
        postgres_password=get("POSTGRES_PASSWORD", Settings.postgres_password),
        postgres_host=get("POSTGRES_HOST", Settings.postgres_host),
        postgres_port=int(get("POSTGRES_PORT", Settings.postgres_port)),
        aws_region=get("AWS_REGION", Settings.aws_region),
        aws_endpoint=get("AWS_ENDPOINT", None),
        aws_access_key_id=get("AWS_ACCESS_KEY_ID", None),
        aws_secret_access_key=get("AWS_SECRET_ACCESS_KEY", None),
        stuck_timeout_ms=int(get("INGESTOR_STUCK_TIMEOUT", Settings.stuck_timeout_ms)),
        page_size=int(get("INGESTOR_PAGE_SIZE", Settings.page_size)),
        batch_size=int(get("INGESTOR_BATCH_SIZE", Settings.batch_size)),
        max_attempts=int(get("INGESTOR_MAX_ATTEMPTS", Settings.max_attempts)),
        retry_delay_seconds=float(get("INGESTOR_RETRY_DELAY_SECONDS", Settings.retry_delay_seconds)),
        metrics_enabled=_parse_bool(get("METRICS_ENABLED", "false")),
        metrics_port=int(get("METRICS_PORT", Settings.metrics_port)),
        log_level=get("LOG_LEVEL", Settings.log_level).upper(),
    )

    if settings.page_size < 1:
        raise ValueError("INGESTOR_PAGE_SIZE must be >= 1")
    if settings.batch_size < 1:
        raise ValueError("INGESTOR_BATCH_SIZE must be >= 1")
    if settings.max_attempts < 1:
        raise ValueError("INGESTOR_MAX_ATTEMPTS must be >= 1")
    return settings
