"""
Shared pytest fixtures for radar tests.

Keeps each test away from the developer's own radar environment.
"""

import logging

import pytest

_RADAR_ENV = ("DATABASE_NAME", "BLIP_DIR", "ADR_DIR", "RADAR_AUTHOR", "RADAR_LOG")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Clear radar variables and run from an empty directory."""
    for name in _RADAR_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    yield tmp_path
    radar_logger = logging.getLogger("radar")
    for handler in list(radar_logger.handlers):
        radar_logger.removeHandler(handler)
        handler.close()
