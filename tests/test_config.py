"""Unit tests for BrokerConfig and Settings.

Tests configuration validation, limit clamping and environment parsing.
No mocks - uses real filesystem and environment variables.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from exec_broker import constants
from exec_broker.config import BrokerConfig
from exec_broker.settings import Settings

# ============================================================================
# Config Validation
# ============================================================================


class TestBrokerConfigValidation:
    """Tests for BrokerConfig field validation."""

    def test_defaults(self) -> None:
        """BrokerConfig has sensible defaults."""
        config = BrokerConfig()
        assert config.pool_size == constants.DEFAULT_POOL_SIZE
        assert config.queue_depth == constants.DEFAULT_QUEUE_DEPTH
        assert config.block_when_full is False
        assert config.default_timeout_seconds == 5.0
        assert config.memory_ceiling_mb == 256
        assert config.max_output_bytes == constants.DEFAULT_MAX_OUTPUT_BYTES
        assert config.stderr_policy == "strict"
        assert config.disabled_languages == frozenset()
        assert config.workspace_root is None

    def test_pool_size_range(self) -> None:
        """pool_size must be in [1, MAX_POOL_SIZE]."""
        assert BrokerConfig(pool_size=1).pool_size == 1
        with pytest.raises(ValidationError):
            BrokerConfig(pool_size=0)
        with pytest.raises(ValidationError):
            BrokerConfig(pool_size=constants.MAX_POOL_SIZE + 1)

    def test_queue_depth_zero_allowed(self) -> None:
        """queue_depth=0 means reject as soon as every worker is busy."""
        assert BrokerConfig(queue_depth=0).queue_depth == 0
        with pytest.raises(ValidationError):
            BrokerConfig(queue_depth=-1)

    def test_memory_ceiling_range(self) -> None:
        with pytest.raises(ValidationError):
            BrokerConfig(memory_ceiling_mb=constants.MIN_MEMORY_CEILING_MB - 1)
        with pytest.raises(ValidationError):
            BrokerConfig(memory_ceiling_mb=constants.MAX_MEMORY_CEILING_MB + 1)

    def test_default_timeout_must_not_exceed_max(self) -> None:
        with pytest.raises(ValidationError, match="exceeds max_timeout_seconds"):
            BrokerConfig(default_timeout_seconds=30, max_timeout_seconds=10)

    def test_stderr_policy_values(self) -> None:
        assert BrokerConfig(stderr_policy="advisory").stderr_policy == "advisory"
        with pytest.raises(ValidationError):
            BrokerConfig(stderr_policy="lenient")  # type: ignore[arg-type]

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BrokerConfig(max_vms=3)  # type: ignore[call-arg]

    def test_frozen(self) -> None:
        config = BrokerConfig()
        with pytest.raises(ValidationError):
            config.pool_size = 8  # type: ignore[misc]

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("swift, Kotlin", frozenset({"swift", "kotlin"})),
            (["JAVA"], frozenset({"java"})),
            ("", frozenset()),
        ],
    )
    def test_disabled_languages_normalized(self, raw: object, expected: frozenset[str]) -> None:
        assert BrokerConfig(disabled_languages=raw).disabled_languages == expected  # type: ignore[arg-type]


# ============================================================================
# Limits
# ============================================================================


class TestLimitsFor:
    """Tests for BrokerConfig.limits_for()."""

    def test_default_timeout_used(self) -> None:
        limits = BrokerConfig(default_timeout_seconds=3).limits_for()
        assert limits.wall_clock_timeout_seconds == 3

    def test_caller_can_lower_timeout(self) -> None:
        limits = BrokerConfig().limits_for(1.5)
        assert limits.wall_clock_timeout_seconds == 1.5

    def test_caller_cannot_exceed_max(self) -> None:
        limits = BrokerConfig(max_timeout_seconds=10).limits_for(3600)
        assert limits.wall_clock_timeout_seconds == 10

    def test_memory_and_output_from_config(self) -> None:
        config = BrokerConfig(memory_ceiling_mb=64, max_output_bytes=1234)
        limits = config.limits_for()
        assert limits.memory_ceiling_bytes == 64 * 1024 * 1024
        assert limits.max_output_bytes == 1234
        assert limits.compile_timeout_seconds == config.compile_timeout_seconds


# ============================================================================
# Workspace Root
# ============================================================================


class TestGetWorkspaceRoot:
    """Tests for BrokerConfig.get_workspace_root()."""

    def test_explicit_root_is_created(self, tmp_path: Path) -> None:
        root = tmp_path / "nested" / "workspaces"
        assert BrokerConfig(workspace_root=root).get_workspace_root() == root
        assert root.is_dir()

    def test_defaults_to_system_temp(self) -> None:
        root = BrokerConfig().get_workspace_root()
        assert root.is_dir()


# ============================================================================
# Settings
# ============================================================================


class TestSettings:
    """Tests for environment-driven Settings."""

    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.host == "127.0.0.1"
        assert settings.port == 3000
        assert settings.cors_origins == ["*"]

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("EXEC_BROKER_POOL_SIZE", "7")
        monkeypatch.setenv("EXEC_BROKER_PORT", "8080")
        monkeypatch.setenv("EXEC_BROKER_STDERR_POLICY", "advisory")
        monkeypatch.setenv("EXEC_BROKER_DISABLED_LANGUAGES", "swift,kotlin")
        monkeypatch.setenv("EXEC_BROKER_WORKSPACE_ROOT", str(tmp_path))

        settings = Settings()
        assert settings.pool_size == 7
        assert settings.port == 8080

        config = settings.to_config()
        assert config.pool_size == 7
        assert config.stderr_policy == "advisory"
        assert config.disabled_languages == frozenset({"swift", "kotlin"})
        assert config.workspace_root == tmp_path

    def test_retention_and_poll_interval_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXEC_BROKER_HANDLE_RETENTION", "16")
        monkeypatch.setenv("EXEC_BROKER_MEMORY_POLL_INTERVAL_SECONDS", "0.25")

        config = Settings().to_config()
        assert config.handle_retention == 16
        assert config.memory_poll_interval_seconds == 0.25

    def test_invalid_values_fail_in_to_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXEC_BROKER_POOL_SIZE", "0")
        with pytest.raises(ValidationError):
            Settings().to_config()
