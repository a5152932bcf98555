"""Pydantic models for testexecutor configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


# Defaults in seconds
DEFAULT_EXECUTION_TIMEOUT = 600.0
DEFAULT_SUCCESS_DELAY = 3600.0
DEFAULT_ERROR_DELAY = 600.0
DEFAULT_PAUSE_DURATION = 2 * 60 * 60.0
DEFAULT_CONTENT_TYPE = "text/xml"


def _non_negative(v: float | None) -> float | None:
    if v is not None and v < 0:
        raise ValueError("durations must not be negative")
    return v


class TimeOptions(BaseModel):
    """Options controlling the periodic execution of the command.

    ``timeout`` is the time a single execution may take. When it is not set,
    the global execution timeout of the service is used. ``success`` and
    ``error`` are the delays waited after a successful or failed run.
    """

    timeout: float | None = None
    success: float = DEFAULT_SUCCESS_DELAY
    error: float = DEFAULT_ERROR_DELAY

    @field_validator("timeout", "success", "error")
    @classmethod
    def validate_non_negative(cls, v: float | None) -> float | None:
        return _non_negative(v)

    def delay_for(self, successful: bool) -> float:
        """Get the delay before the next run."""
        return self.success if successful else self.error


class ExecutorConfig(BaseModel):
    """The command under test and how it is executed."""

    command: str = "npm test"
    cwd: str | None = None
    execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT
    content_type: str = DEFAULT_CONTENT_TYPE

    @field_validator("execution_timeout")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        return _non_negative(v)


class ScheduleConfig(BaseModel):
    """Background (async) execution configuration."""

    enabled: bool = True
    timeout: float | None = None
    success: float = DEFAULT_SUCCESS_DELAY
    error: float = DEFAULT_ERROR_DELAY
    pause_duration: float = DEFAULT_PAUSE_DURATION

    @field_validator("timeout", "success", "error", "pause_duration")
    @classmethod
    def validate_non_negative(cls, v: float | None) -> float | None:
        return _non_negative(v)

    def to_time_options(self) -> TimeOptions:
        return TimeOptions(timeout=self.timeout, success=self.success, error=self.error)


class DaemonConfig(BaseModel):
    """Daemon configuration."""

    host: str = "127.0.0.1"
    port: int = 9877
    log_level: str = "INFO"
    log_file: str | None = None
    log_rotation: str = "10 MB"


class ApiAuthConfig(BaseModel):
    """API authentication configuration."""

    enabled: bool = False
    token: str | None = None


class ApiConfig(BaseModel):
    """API configuration."""

    auth: ApiAuthConfig = Field(default_factory=ApiAuthConfig)


class AppConfig(BaseModel):
    """Main testexecutor configuration."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
