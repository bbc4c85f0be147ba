"""Shared test fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import structlog

from hub.models import HubConfig
from hub.settings import SettingsStore

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_dirs(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Generator[Path, None, None]:
    """Isolate tests from the real user configuration and data directories.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to temporary directories so
    that tests never read or modify ~/.config/vatacars-hub.
    """
    base = tmp_path_factory.mktemp("isolated")
    config_home = base / "xdg_config"
    data_home = base / "xdg_data"
    config_home.mkdir(parents=True, exist_ok=True)
    data_home.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.setenv("XDG_DATA_HOME", str(data_home))
    monkeypatch.delenv("APPDATA", raising=False)
    monkeypatch.delenv("LOCALAPPDATA", raising=False)

    yield base

    structlog.reset_defaults()


@pytest.fixture
def host_dir(tmp_path: Path) -> Path:
    """A fake vatSys binaries directory with an empty Plugins folder."""
    bin_dir = tmp_path / "vatSys" / "bin"
    (bin_dir / "Plugins").mkdir(parents=True)
    (bin_dir / "vatSys.exe").write_bytes(b"MZ")
    return bin_dir.resolve()


@pytest.fixture
def settings(tmp_path: Path) -> SettingsStore:
    """A settings store in a temporary directory."""
    return SettingsStore(tmp_path / "settings.yaml")


@pytest.fixture
def config(tmp_path: Path) -> HubConfig:
    """Configuration whose default host paths point nowhere."""
    return HubConfig(
        host_default_paths=[tmp_path / "no-such-dir" / "bin"],
        data_dir=tmp_path / "data",
        temp_dir=tmp_path / "staging",
    )
