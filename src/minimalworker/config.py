"""
Configuration for MinimalWorker hosts.

Uses Pydantic for validation and environment loading.
"""

import logging
import os
from functools import lru_cache

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class WorkerSettings(BaseSettings):
    """Host-wide settings for the worker engine.

    Loads from environment variables with MINIMALWORKER_ prefix.
    """

    model_config = ConfigDict(
        env_prefix="MINIMALWORKER_",
        env_file=".env",
        extra="ignore",
    )

    # Service identity
    service_name: str = Field(default="minimalworker")
    log_level: str = Field(default="INFO")

    # Fatal error handling
    exit_on_fatal: bool = Field(
        default=True,
        description="Exit the process on fatal errors; False re-raises them (test harnesses)",
    )
    fatal_exit_code: int = Field(default=1, description="Process exit status on fatal errors")

    # Shutdown
    shutdown_timeout: float = Field(
        default=30.0, description="Seconds to wait for workers to stop before cancelling them"
    )
    cancellation_grace: float = Field(
        default=5.0,
        description="Seconds a callback gets to acknowledge cancellation before it is abandoned",
    )

    # Scheduling
    cron_timezone: str = Field(default="UTC", description="Timezone cron expressions are evaluated in")

    # Telemetry
    telemetry_name: str = Field(
        default="minimalworker", description="Tracer and meter instrumentation name"
    )

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        """Load configuration from environment variables."""
        return cls(
            service_name=os.getenv("SERVICE_NAME", "minimalworker"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            exit_on_fatal=os.getenv("MINIMALWORKER_EXIT_ON_FATAL", "true").lower()
            in ("1", "true", "yes"),
            fatal_exit_code=int(os.getenv("MINIMALWORKER_FATAL_EXIT_CODE", "1")),
            shutdown_timeout=float(os.getenv("MINIMALWORKER_SHUTDOWN_TIMEOUT", "30.0")),
            cancellation_grace=float(os.getenv("MINIMALWORKER_CANCELLATION_GRACE", "5.0")),
            cron_timezone=os.getenv("MINIMALWORKER_CRON_TIMEZONE", "UTC"),
            telemetry_name=os.getenv("MINIMALWORKER_TELEMETRY_NAME", "minimalworker"),
        )


@lru_cache(maxsize=1)
def get_settings() -> WorkerSettings:
    """Get the process-wide settings, loaded once from the environment."""
    return WorkerSettings.from_env()


def configure_logging(level: str = "INFO"):
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
