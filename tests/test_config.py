"""Tests for environment settings and the launcher's port selection."""

from __future__ import annotations

import socket
from pathlib import Path

import pytest

from intake.__main__ import _pick_port
from intake.config import Settings, _read_env_file


class TestEnvFile:
    def test_reads_pairs_and_skips_noise(self, tmp_path: Path) -> None:
        env = tmp_path / ".env"
        env.write_text(
            "# comment\n"
            "REDIS_URL='redis://cache:6379/0'\n"
            "\n"
            "INTAKE_CACHE_NAMESPACE = tenant-a\n"
            "EMPTY=\n"
            "not a pair\n",
            encoding="utf-8",
        )

        assert _read_env_file(env) == {
            "REDIS_URL": "redis://cache:6379/0",
            "INTAKE_CACHE_NAMESPACE": "tenant-a",
        }

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert _read_env_file(tmp_path / ".env") == {}


class TestSettings:
    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("INTAKE_BACKEND_URL", "https://api.example.com/v1/")
        monkeypatch.setenv("INTAKE_PLACEHOLDER_PREFIXES", "mock-user, guest-")
        monkeypatch.setenv("INTAKE_RESYNC_DELAY_SECONDS", "2.5")
        monkeypatch.delenv("REDIS_URL", raising=False)

        settings = Settings.from_env()

        assert settings.backend_url == "https://api.example.com/v1"
        assert settings.placeholder_prefixes == ("mock-user", "guest-")
        assert settings.resync_delay_seconds == 2.5
        assert settings.redis_url is None


class TestPickPort:
    def test_skips_a_busy_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            port = busy.getsockname()[1]

            assert _pick_port(host="127.0.0.1", preferred=port, tries=1) == port
            assert _pick_port(host="127.0.0.1", preferred=port, tries=5) != port
