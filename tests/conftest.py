"""Shared pytest fixtures."""

import logging
from pathlib import Path

import pytest

from trento_fleet.config import Settings, get_settings
from trento_fleet.services.transport import ProbeResponse


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logger = logging.getLogger("trento_fleet")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = True


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**overrides) -> Settings:
        values = {
            "machines_file": str(tmp_path / ".machines.conf.csv"),
            "ssh_keys_dir": str(tmp_path / ".ssh-keys"),
            "known_hosts_file": str(tmp_path / "known_hosts"),
            "logs_dir": str(tmp_path / "logs"),
            "terraform_dir": str(tmp_path / "terraform"),
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def machines_csv(tmp_path: Path):
    def _write(*rows: str, header: bool = True) -> Path:
        path = tmp_path / ".machines.conf.csv"
        lines = ["prefix,slesVersion,spVersion,suffix"] if header else []
        lines.extend(rows)
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write


class ScriptedExecutor:
    """Replays canned responses per (host, path); the last one repeats forever."""

    def __init__(self, script=None, default="200"):
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.default = default
        self.calls = []

    def __call__(self, host, probe, options):
        self.calls.append((host, probe.path))
        queue = self.script.get((host, probe.path)) or self.script.get(probe.path)
        if not queue:
            return ProbeResponse(status=self.default, body="ok")
        status = queue.pop(0) if len(queue) > 1 else queue[0]
        return ProbeResponse(status=status, body=f"body-{status}")


@pytest.fixture
def executor():
    return ScriptedExecutor


@pytest.fixture
def sleeps():
    recorded = []

    def _sleep(seconds):
        recorded.append(seconds)

    _sleep.calls = recorded
    return _sleep
