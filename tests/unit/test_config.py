from __future__ import annotations

from pathlib import Path

import pytest

from forge.core.config import Config
from forge.core.exceptions import ConfigError


def test_repo_defaults_load(test_config: Config) -> None:
    assert test_config.reconciler.expiry_window_seconds == 86400
    assert test_config.notifications.enabled is False
    assert test_config.db_path.name == "forge.db"
    assert test_config.db_path.parent == test_config.data_dir


def test_user_overlay_deep_merges(tmp_path: Path) -> None:
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir()
    (cfg_dir / "default.yaml").write_text(
        "reconciler:\n  expiry_window_seconds: 600\n  sweep_interval_seconds: 30\napi:\n  port: 5060\n"
    )
    (cfg_dir / "user.yaml").write_text("reconciler:\n  expiry_window_seconds: 120\n")

    cfg = Config.from_yaml(cfg_dir / "default.yaml")
    assert cfg.reconciler.expiry_window_seconds == 120
    assert cfg.reconciler.sweep_interval_seconds == 30
    assert cfg.api.port == 5060


def test_expiry_window_must_be_positive(tmp_path: Path) -> None:
    path = tmp_path / "default.yaml"
    path.write_text("reconciler:\n  expiry_window_seconds: 0\n")
    with pytest.raises(ConfigError):
        Config.from_yaml(path)


def test_config_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOLARFORGE_RECONCILER__EXPIRY_WINDOW_SECONDS", "60")
    cfg = Config()  # BaseSettings reads env
    assert cfg.reconciler.expiry_window_seconds == 60


def test_config_from_yaml_raises_if_missing(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        Config.from_yaml(tmp_path / "missing.yaml")
