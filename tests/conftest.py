"""
Test session bootstrap for devws

Ensures the in-repo devws package is importable without requiring an
editable install, and keeps every test isolated from the developer's own
DEVWS_* environment.

- Adds src/ to sys.path so `import devws` works.
- Adds tests/ to sys.path so the shared fakes module is importable.
- Tests marked `docker` are skipped when no Docker daemon is reachable.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def _add_sys_path(p: Path) -> None:
    """
    Prepend a filesystem path to sys.path if it's not already present.
    """
    rp = str(p.resolve())
    if rp not in sys.path:
        sys.path.insert(0, rp)


_THIS_FILE = Path(__file__).resolve()
_TESTS_DIR = _THIS_FILE.parent
_PROJECT_DIR = _TESTS_DIR.parent

_add_sys_path(_PROJECT_DIR / "src")
_add_sys_path(_TESTS_DIR)


def _docker_available() -> bool:
    """
    Best-effort check for a reachable Docker daemon.
    """
    import docker
    from docker.errors import DockerException

    try:
        client = docker.from_env(timeout=5)
        client.ping()
        client.close()
        return True
    except DockerException:
        return False


def pytest_collection_modifyitems(config, items):
    if not any(item.get_closest_marker("docker") for item in items):
        return
    if _docker_available():
        return
    skip = pytest.mark.skip(reason="Docker daemon not reachable")
    for item in items:
        if item.get_closest_marker("docker"):
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """
    Strip DEVWS_* variables, point logs at tmp_path and reset cached settings.
    """
    from devws.config import get_settings

    for key in list(os.environ):
        if key.startswith("DEVWS_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DEVWS_LOG_DIR", str(tmp_path / "logs"))
    # .env in the working directory must not leak into tests
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    from devws.config import Settings

    return Settings.from_env(dotenv=False)


@pytest.fixture
def fake_client():
    from fakes import FakeDockerClient

    return FakeDockerClient()
