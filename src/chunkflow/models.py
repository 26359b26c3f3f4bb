"""Pydantic models for engine configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class DatabaseConfig(BaseModel):
    """SQLite storage settings."""

    path: str = Field(default="data/chunkflow.db", description="SQLite database file")
    busy_timeout_s: float = Field(
        default=30.0, gt=0.0, description="How long a connection waits on a locked database"
    )
    artifact_dir: str = Field(
        default="data/uploads", description="Directory for stored uploads and exports"
    )


class QueueConfig(BaseModel):
    """Chunking and durable queue settings."""

    chunk_size: int = Field(default=500, gt=0, description="Items per chunk")
    priority: int = Field(default=1, description="Priority of enqueued chunks (higher first)")
    keep_completed: int = Field(
        default=10, ge=0, description="Finished entries retained after pruning"
    )
    keep_failed: int = Field(default=50, ge=0, description="Failed entries retained after pruning")


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    count: int = Field(default=10, gt=0, description="Concurrent chunk executors")
    poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Sleep between dequeue attempts on an empty queue"
    )
    stale_lease_s: float = Field(
        default=600.0, gt=0.0, description="Lease age after which an active chunk is abandoned"
    )


class RetryConfig(BaseModel):
    """Per-item generation retry policy."""

    max_retries: int = Field(default=3, ge=1, description="Attempts per item, including the first")
    base_delay_s: float = Field(
        default=1.0, ge=0.0, description="Backoff base; attempt n waits base * 2^(n-1)"
    )


class JanitorConfig(BaseModel):
    """Queue reconciliation settings."""

    interval_s: float = Field(default=300.0, gt=0.0, description="Period between sweeps")
    startup_delay_s: float = Field(default=5.0, ge=0.0, description="Delay before first sweep")
    cleanup_attempts: int = Field(default=3, ge=1, description="Per-job cleanup attempts")
    cleanup_pause_s: float = Field(default=1.0, ge=0.0, description="Pause between attempts")
    completion_cleanup_delay_s: float = Field(
        default=5.0, ge=0.0, description="Delay before cleaning up a finished or stopped job"
    )


class BroadcasterConfig(BaseModel):
    """Progress fan-out limits."""

    max_subscribers_per_job: int = Field(default=100, gt=0)
    buffer_size: int = Field(default=256, gt=0, description="Events buffered per subscriber")
    max_retained_jobs: int = Field(
        default=1024, gt=0, description="Jobs whose latest event is kept for replay"
    )


class GeneratorConfig(BaseModel):
    """Content generation backend settings."""

    backend: Literal["stub", "openai", "huggingface", "auto"] = Field(
        default="auto",
        description="auto = openai, then huggingface, by whichever API key is present; else stub",
    )
    base_url: str = Field(default="https://api.openai.com/v1")
    model: str = Field(default="gpt-4o-mini")
    api_key_env: str = Field(default="OPENAI_API_KEY", description="Env var holding the API key")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=100, gt=0)
    timeout_s: float = Field(default=30.0, gt=0.0)
    huggingface_base_url: str = Field(default="https://api-inference.huggingface.co/models")
    huggingface_model: str = Field(default="distilgpt2")
    huggingface_api_key_env: str = Field(default="HUGGINGFACE_API_KEY")
    top_p: float = Field(
        default=0.9, gt=0.0, le=1.0, description="Nucleus sampling for huggingface"
    )
    stub_latency_s: float = Field(
        default=0.0, ge=0.0, description="Artificial latency of the stub backend"
    )


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = Field(default="INFO", description="Root log level")
    file: Optional[str] = Field(default=None, description="Optional rotating log file")
    max_bytes: int = Field(default=5_000_000, gt=0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        """Validate the level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level


class EngineConfig(BaseModel):
    """Complete engine configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    janitor: JanitorConfig = Field(default_factory=JanitorConfig)
    broadcaster: BroadcasterConfig = Field(default_factory=BroadcasterConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "EngineConfig":
        """Apply CLI overrides and return new config instance.

        ``None`` values mean the flag was not given.
        """
        config_dict = self.model_dump()

        if cli_args.get("db_path") is not None:
            config_dict["database"]["path"] = cli_args["db_path"]
        if cli_args.get("workers") is not None:
            config_dict["workers"]["count"] = cli_args["workers"]
        if cli_args.get("chunk_size") is not None:
            config_dict["queue"]["chunk_size"] = cli_args["chunk_size"]
        if cli_args.get("max_retries") is not None:
            config_dict["retry"]["max_retries"] = cli_args["max_retries"]
        if cli_args.get("generator") is not None:
            config_dict["generator"]["backend"] = cli_args["generator"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return EngineConfig.from_dict(config_dict)
