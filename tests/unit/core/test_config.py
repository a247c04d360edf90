"""Tests for portalsync configuration loading."""

import json
from pathlib import Path

import pytest

from portalsync.core.config import PortalSyncConfig, is_production_environment
from portalsync.core.exceptions import ConfigurationError, PortalSyncError, TaskNotFoundError


class TestProductionGate:
    """Tests for is_production_environment."""

    def test_empty_environment_is_not_production(self) -> None:
        """Test that nothing set means the scheduler stays off."""
        assert is_production_environment({}) is False

    @pytest.mark.parametrize(
        "environ",
        [
            {"PORTALSYNC_ENV": "production"},
            {"NODE_ENV": "production"},
            {"NODE_ENV": "Production"},
            {"ENABLE_SCHEDULER": "true"},
        ],
    )
    def test_enabled_environments(self, environ: dict[str, str]) -> None:
        """Test each way of turning scheduling on."""
        assert is_production_environment(environ) is True

    def test_explicit_flag_must_be_true(self) -> None:
        """Test that other flag values do not enable scheduling."""
        assert is_production_environment({"ENABLE_SCHEDULER": "1"}) is False
        assert is_production_environment({"NODE_ENV": "development"}) is False


class TestPortalSyncConfig:
    """Tests for PortalSyncConfig."""

    def test_defaults(self) -> None:
        """Test default values."""
        config = PortalSyncConfig()

        assert config.scheduler.enabled is False
        assert config.scheduler.check_interval_seconds == 60
        assert config.lms.page_size == 100
        assert config.database.path == "portalsync.db"

    def test_from_dict_partial(self) -> None:
        """Test that missing sections keep their defaults."""
        config = PortalSyncConfig.from_dict({"scheduler": {"check_interval_seconds": 30}})

        assert config.scheduler.check_interval_seconds == 30
        assert config.scheduler.startup_delay_seconds == 5.0
        assert config.crm.page_size == 100

    def test_from_dict_unknown_key(self) -> None:
        """Test that unknown keys raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            PortalSyncConfig.from_dict({"scheduler": {"bogus": 1}})

    def test_load_missing_default_file(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a missing default config file yields defaults."""
        monkeypatch.chdir(temp_dir)

        assert PortalSyncConfig.load() == PortalSyncConfig()

    def test_load_missing_explicit_file(self, temp_dir: Path) -> None:
        """Test that a missing explicit path is an error."""
        with pytest.raises(ConfigurationError) as exc_info:
            PortalSyncConfig.load(temp_dir / "nope.json")

        assert "not found" in str(exc_info.value)

    def test_load_invalid_json(self, temp_dir: Path) -> None:
        """Test that malformed JSON is reported."""
        path = temp_dir / "portalsync.config.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError):
            PortalSyncConfig.load(path)

    def test_load_non_object(self, temp_dir: Path) -> None:
        """Test that a JSON array is rejected."""
        path = temp_dir / "portalsync.config.json"
        path.write_text("[1, 2]")

        with pytest.raises(ConfigurationError):
            PortalSyncConfig.load(path)

    def test_load_file(self, temp_dir: Path) -> None:
        """Test loading values from a file."""
        path = temp_dir / "portalsync.config.json"
        path.write_text(json.dumps({"database": {"path": "data/sync.db"}, "lms": {"page_size": 50}}))

        config = PortalSyncConfig.load(path)

        assert config.database.path == "data/sync.db"
        assert config.lms.page_size == 50

    def test_with_environment_overlays(self) -> None:
        """Test that the environment sets the gate and secrets."""
        config = PortalSyncConfig().with_environment(
            {
                "NODE_ENV": "production",
                "LMS_API_KEY": "lms-key",
                "CRM_API_KEY": "crm-key",
                "CRM_TENANT_ID": "42",
                "PORTALSYNC_DATABASE": "/tmp/x.db",
                "ALERT_WEBHOOK_URL": "https://hooks.example.com/abc",
            }
        )

        assert config.scheduler.enabled is True
        assert config.lms.api_key == "lms-key"
        assert config.crm.api_key == "crm-key"
        assert config.crm.tenant_id == "42"
        assert config.database.path == "/tmp/x.db"
        assert config.alerts.webhook_url == "https://hooks.example.com/abc"

    def test_with_environment_gate_overrides_file(self) -> None:
        """Test that the gate always comes from the environment."""
        config = PortalSyncConfig.from_dict({"scheduler": {"enabled": True}})

        assert config.with_environment({}).scheduler.enabled is False

    def test_system_alerts_follow_gate(self) -> None:
        """Test that alerts default to the scheduler gate."""
        off = PortalSyncConfig()
        on = PortalSyncConfig().with_environment({"ENABLE_SCHEDULER": "true"})
        forced = PortalSyncConfig.from_dict({"alerts": {"enabled": True}})

        assert off.system_alerts_enabled is False
        assert on.system_alerts_enabled is True
        assert forced.system_alerts_enabled is True

    def test_to_dict_omits_secrets(self) -> None:
        """Test that API keys never appear in the dict form."""
        config = PortalSyncConfig().with_environment({"LMS_API_KEY": "secret", "CRM_API_KEY": "secret2"})

        dumped = json.dumps(config.to_dict())

        assert "secret" not in dumped
        assert config.to_dict()["scheduler"]["check_interval_seconds"] == 60


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_details_in_message(self) -> None:
        """Test that details are appended to the message."""
        error = PortalSyncError("Boom", details={"a": 1})

        assert str(error) == "Boom (a=1)"

    def test_task_not_found(self) -> None:
        """Test TaskNotFoundError carries the task type."""
        error = TaskNotFoundError("sync_users")

        assert error.task_type == "sync_users"
        assert error.message == "Task not found"
        assert isinstance(error, PortalSyncError)
