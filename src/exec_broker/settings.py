"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from exec_broker import constants
from exec_broker.config import BrokerConfig, StderrPolicy


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with EXEC_BROKER_ prefix.
    Example: EXEC_BROKER_POOL_SIZE=8

    Read once by the server/CLI entry point and converted into an immutable
    BrokerConfig via to_config().
    """

    model_config = SettingsConfigDict(
        env_prefix="EXEC_BROKER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # HTTP
    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str | None = None

    # Worker pool
    pool_size: int = constants.DEFAULT_POOL_SIZE
    queue_depth: int = constants.DEFAULT_QUEUE_DEPTH
    block_when_full: bool = False
    admission_timeout_seconds: float = constants.DEFAULT_ADMISSION_TIMEOUT_SECONDS
    handle_retention: int = constants.DEFAULT_HANDLE_RETENTION

    # Limits
    default_timeout_seconds: float = constants.DEFAULT_TIMEOUT_SECONDS
    max_timeout_seconds: float = constants.MAX_TIMEOUT_SECONDS
    compile_timeout_seconds: float = constants.DEFAULT_COMPILE_TIMEOUT_SECONDS
    memory_ceiling_mb: int = constants.DEFAULT_MEMORY_CEILING_MB
    max_output_bytes: int = constants.DEFAULT_MAX_OUTPUT_BYTES
    memory_poll_interval_seconds: float = constants.MEMORY_POLL_INTERVAL_SECONDS

    # Workspace
    workspace_root: Path | None = None

    # Policy
    stderr_policy: StderrPolicy = "strict"
    disabled_languages: str = ""
    """Comma-separated identifiers, e.g. EXEC_BROKER_DISABLED_LANGUAGES=swift,kotlin"""

    def to_config(self) -> BrokerConfig:
        """Freeze the execution-related settings into a BrokerConfig."""
        return BrokerConfig(
            pool_size=self.pool_size,
            queue_depth=self.queue_depth,
            block_when_full=self.block_when_full,
            admission_timeout_seconds=self.admission_timeout_seconds,
            handle_retention=self.handle_retention,
            default_timeout_seconds=self.default_timeout_seconds,
            max_timeout_seconds=self.max_timeout_seconds,
            compile_timeout_seconds=self.compile_timeout_seconds,
            memory_ceiling_mb=self.memory_ceiling_mb,
            max_output_bytes=self.max_output_bytes,
            memory_poll_interval_seconds=self.memory_poll_interval_seconds,
            workspace_root=self.workspace_root,
            stderr_policy=self.stderr_policy,
            disabled_languages=self.disabled_languages,
        )
