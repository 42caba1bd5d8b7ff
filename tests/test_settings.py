"""Tests for settings validation and env-prefixed loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.config.settings import (
    ControlApiSettings,
    LifecycleSettings,
    LoggingSettings,
    PersistenceSettings,
    ReconcileSettings,
)


class TestControlApiSettings:
    def test_trailing_slash_stripped(self) -> None:
        s = ControlApiSettings(base_url="http://bridge.local:3000/")
        assert s.base_url == "http://bridge.local:3000"

    def test_non_http_rejected(self) -> None:
        with pytest.raises(ValidationError, match="CONTROL_API_BASE_URL must be an http"):
            ControlApiSettings(base_url="bridge.local:3000")

    def test_env_prefix(self, monkeypatch) -> None:
        monkeypatch.setenv("CONTROL_API_BASE_URL", "https://ops.example:8443")
        monkeypatch.setenv("CONTROL_API_TIMEOUT_S", "2.5")
        s = ControlApiSettings()
        assert s.base_url == "https://ops.example:8443"
        assert s.timeout_s == 2.5


class TestLifecycleSettings:
    def test_defaults(self) -> None:
        s = LifecycleSettings()
        assert s.post_start_check_delay_s == 3.0
        assert s.verify_attempts == 3
        assert s.verify_base_delay_s == 2.0
        assert s.retry_verify_attempts == 2
        assert s.force_kill_verify_attempts == 1

    def test_zero_attempts_rejected(self) -> None:
        with pytest.raises(ValidationError, match="verify_attempts must be >= 1"):
            LifecycleSettings(verify_attempts=0)

    def test_negative_delay_rejected(self) -> None:
        with pytest.raises(ValidationError, match="verify_base_delay_s must be >= 0"):
            LifecycleSettings(verify_base_delay_s=-1)


class TestOtherSettings:
    def test_reconcile_defaults(self) -> None:
        s = ReconcileSettings()
        assert s.interval_s == 15.0
        assert s.config_freshness_s == 5.0

    def test_persistence_defaults(self) -> None:
        s = PersistenceSettings()
        assert s.state_path == Path(".bridgectl/lock_states.json")
        assert s.key == "bridgectl.lock_states"
        assert s.ttl_s == 7200

    def test_log_level_normalized(self) -> None:
        assert LoggingSettings(level="debug").level == "DEBUG"

    def test_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError, match="LOG_LEVEL must be one of"):
            LoggingSettings(level="verbose")
