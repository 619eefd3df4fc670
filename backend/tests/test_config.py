"""Tests for settings loading and storage path resolution."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from marketchat.config import get_config, load_config, reset_config, set_config


def test_defaults_when_files_missing(tmp_path):
    """Missing settings and secrets fall back to model defaults."""
    cfg = load_config(settings_path=tmp_path / "marketchat.settings.yaml")

    assert cfg.presence.ttl_seconds == 45.0
    assert cfg.presence.heartbeat_interval_seconds == 30.0
    assert cfg.client.poll_interval_seconds == 5.0
    assert cfg.client.self_sent_ttl_seconds == 5.0
    assert cfg.messaging.max_text_length == 4000
    assert cfg.secrets.jwt.algorithm == "HS256"
    # Nothing to anchor to, so the defaults stay relative
    assert cfg.storage.conversations_db_path == "conversations.duckdb"


def test_secrets_loaded_from_sibling_file(tmp_path):
    settings_file = tmp_path / "marketchat.settings.yaml"
    settings_file.write_text("server:\n  port: 9000\n", encoding="utf-8")
    (tmp_path / "marketchat.secrets.yaml").write_text(
        "jwt:\n  secret_key: from-secrets-file\n", encoding="utf-8"
    )

    cfg = load_config(settings_path=settings_file)
    assert cfg.server.port == 9000
    assert cfg.secrets.jwt.secret_key == "from-secrets-file"


def test_storage_paths_relative_to_settings_dir(tmp_path):
    """Relative DuckDB paths resolve from the settings file directory."""
    settings_file = tmp_path / "marketchat.settings.yaml"
    settings_file.write_text(
        "storage:\n"
        "  conversations_db_path: data/conversations.duckdb\n"
        "  users_db_path: ':memory:'\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.storage.conversations_db_path) == tmp_path.resolve() / "data" / "conversations.duckdb"
    assert cfg.storage.users_db_path == ":memory:"


def test_absolute_storage_path_unchanged(tmp_path):
    absolute_path = tmp_path / "absolute" / "conversations.duckdb"
    settings_file = tmp_path / "marketchat.settings.yaml"
    settings_file.write_text(
        f"storage:\n  conversations_db_path: {absolute_path}\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.storage.conversations_db_path) == absolute_path


def test_log_level_is_case_insensitive(tmp_path):
    settings_file = tmp_path / "marketchat.settings.yaml"
    settings_file.write_text("logging:\n  level: DEBUG\n", encoding="utf-8")
    assert load_config(settings_path=settings_file).logging.level == "debug"


def test_invalid_values_rejected(tmp_path):
    settings_file = tmp_path / "marketchat.settings.yaml"
    settings_file.write_text("client:\n  poll_interval_seconds: 0\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(settings_path=settings_file)


def test_set_and_reset_config(test_config, monkeypatch, tmp_path):
    assert get_config() is test_config

    monkeypatch.chdir(tmp_path)
    reset_config()
    reloaded = get_config()
    assert reloaded is not test_config
    assert reloaded.storage.users_db_path == "users.duckdb"
    set_config(test_config)
