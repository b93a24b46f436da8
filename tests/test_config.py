"""Tests for YAML configuration."""

from pathlib import Path

import pytest
import yaml

from shipcode.config import Config, env_name


def test_set_and_get_persist(tmp_path: Path) -> None:
    """Test values are written to config.yaml and read back."""
    config = Config(config_dir=tmp_path / ".shipcode")
    config.set("supabase.url", "https://example.supabase.co")

    assert Config(config_dir=tmp_path / ".shipcode").get("supabase.url") == "https://example.supabase.co"
    with open(tmp_path / ".shipcode" / "config.yaml") as f:
        assert yaml.safe_load(f) == {"supabase.url": "https://example.supabase.co"}


def test_unset(tmp_path: Path) -> None:
    """Test unsetting removes the key."""
    config = Config(config_dir=tmp_path)
    config.set("backend", "memory")
    config.unset("backend")

    assert config.get("backend", "supabase") == "supabase"
    assert config.list() == {}


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test SHIPCODE_* variables take precedence over the file."""
    config = Config(config_dir=tmp_path)
    config.set("gemini.api_key", "from-file")
    monkeypatch.setenv("SHIPCODE_GEMINI_API_KEY", "from-env")

    assert env_name("gemini.api_key") == "SHIPCODE_GEMINI_API_KEY"
    assert config.get("gemini.api_key") == "from-env"


def test_get_float(tmp_path: Path) -> None:
    """Test numeric settings are parsed, and junk is rejected."""
    config = Config(config_dir=tmp_path)
    assert config.get_float("session.login_timeout", 15.0) == 15.0

    config.set("session.login_timeout", "2.5")
    assert config.get_float("session.login_timeout", 15.0) == 2.5

    config.set("session.login_timeout", "soon")
    with pytest.raises(ValueError):
        config.get_float("session.login_timeout", 15.0)


def test_local_falls_back_to_global(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test local config reads global values it does not override."""
    home = tmp_path / "home"
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setattr(Path, "home", lambda: home)
    monkeypatch.chdir(work)

    Config(use_global=True).set("auth.email", "admin@example.com")
    local = Config()
    local.set("backend", "memory")

    assert local.get("auth.email") == "admin@example.com"
    assert local.list() == {"auth.email": "admin@example.com", "backend": "memory"}
    assert Config(use_global=True).list() == {"auth.email": "admin@example.com"}


def test_invalid_yaml(tmp_path: Path) -> None:
    """Test a corrupt config file is reported."""
    (tmp_path / "config.yaml").write_text("backend: [unclosed")
    with pytest.raises(ValueError):
        Config(config_dir=tmp_path)
