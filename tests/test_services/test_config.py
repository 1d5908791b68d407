"""Tests for application configuration."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from objsync.config import Settings


class TestSettings:
    def test_default_settings(self) -> None:
        s = Settings(_env_file=None)
        assert s.secret_key == "change-me-in-production"
        assert s.debug is False
        assert s.port == 8750
        assert s.filter_namespace == "filters"
        assert s.is_single_writer is True

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FILTER_NAMESPACE", "views")
        monkeypatch.setenv("SYNC_DEFAULT_WORKERS", "8")
        monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://localhost/objsync")
        s = Settings(_env_file=None)
        assert s.filter_namespace == "views"
        assert s.sync_default_workers == 8
        assert s.is_single_writer is False

    def test_settings_from_fixture(self, test_settings: Settings) -> None:
        assert test_settings.secret_key == "test-secret-key-with-at-least-32-characters"
        assert test_settings.debug is True


class TestRuntimeSecurity:
    def test_debug_skips_checks(self) -> None:
        Settings(_env_file=None, debug=True).validate_runtime_security()

    def test_default_secret_rejected(self) -> None:
        with pytest.raises(ValueError, match="SECRET_KEY"):
            Settings(_env_file=None).validate_runtime_security()

    def test_non_loopback_host_rejected(self) -> None:
        settings = Settings(_env_file=None, secret_key="x" * 32, host="0.0.0.0")
        with pytest.raises(ValueError, match="HOST"):
            settings.validate_runtime_security()

    @pytest.mark.parametrize("host", ["localhost", "127.0.0.1", "::1", "127.0.0.2"])
    def test_loopback_hosts_accepted(self, host: str) -> None:
        Settings(_env_file=None, secret_key="x" * 32, host=host).validate_runtime_security()


class TestCliEntry:
    def test_cli_entry_runs_uvicorn_on_configured_address(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from objsync.main import cli_entry

        monkeypatch.setenv("PORT", "9999")
        with patch("uvicorn.run") as mock_run:
            cli_entry()
        _args, kwargs = mock_run.call_args
        assert kwargs == {"host": "127.0.0.1", "port": 9999}
