"""Pydantic models for configuration and data validation."""

from typing import Dict, Literal

from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    """Durable store location."""

    db_path: str = Field(default="queue.db", description="SQLite database path (or :memory:)")
    namespace: str = Field(
        default="video_processing",
        pattern=r"^[a-z][a-z0-9_]*$",
        description="Prefix for queue collection names",
    )


class DispatcherConfig(BaseModel):
    """Dispatch loop and worker pool settings."""

    max_concurrent_jobs: int = Field(default=3, ge=1, description="Worker pool size")
    dequeue_timeout_s: float = Field(
        default=5.0, gt=0.0, description="Longest wait on an empty queue before re-checking"
    )
    poll_interval_s: float = Field(
        default=0.1, gt=0.0, description="Polling step while waiting on an empty queue"
    )
    error_backoff_s: float = Field(
        default=5.0, ge=0.0, description="Pause after a store failure in the dispatch loop"
    )


class RetryConfig(BaseModel):
    """Retry budget and backoff."""

    max_attempts: int = Field(default=3, ge=1, description="Default attempts per job")
    backoff_unit_s: float = Field(
        default=1.0,
        gt=0.0,
        description="Backoff unit; a retry waits 2^attempts units",
    )


class JobsConfig(BaseModel):
    """Job record retention."""

    ttl_s: int = Field(default=86400, gt=0, description="Record lifetime from creation")
    cleanup_older_than_days: int = Field(
        default=7, ge=0, description="Default age for cleanup of completed jobs"
    )


class LoggingConfig(BaseModel):
    """Structured logging output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=False, alias="json", description="Render JSON lines instead of console output"
    )

    model_config = {"populate_by_name": True}


class QueueConfig(BaseModel):
    """Complete application configuration with validation."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    handlers: Dict[str, str] = Field(
        default_factory=dict, description="Job type -> 'module:attribute' handler path"
    )

    @classmethod
    def from_dict(cls, data: dict) -> "QueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "QueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump(by_alias=True)

        if cli_args.get("db") is not None:
            config_dict["store"]["db_path"] = cli_args["db"]
        if cli_args.get("workers") is not None:
            config_dict["dispatcher"]["max_concurrent_jobs"] = cli_args["workers"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"].upper()

        return QueueConfig.from_dict(config_dict)
