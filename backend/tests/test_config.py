"""Tests for settings loading."""
import pytest
from pydantic import ValidationError

from pharmalink.config import (
    AppSettings,
    ChatSettings,
    get_config,
    load_settings,
    reset_config,
    set_config,
)


def test_defaults_when_files_missing(tmp_path):
    cfg = load_settings(
        settings_path=tmp_path / "missing.settings.yaml",
        secrets_path=tmp_path / "missing.secrets.yaml",
    )
    assert cfg.server.port == 3000
    assert cfg.chat.idle_timeout_seconds == 300
    assert cfg.chat.max_message_length == 500
    assert cfg.chat.max_connections_per_user == 10
    assert cfg.secrets.jwt.algorithm == "HS256"


def test_settings_and_secrets_are_merged(tmp_path):
    settings_file = tmp_path / "pharmalink.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 8080\n"
        "logging:\n"
        "  level: DEBUG\n"
        "database:\n"
        "  path: data/chat.duckdb\n"
        "chat:\n"
        "  idle_timeout_seconds: 45\n"
        "  max_connections_per_user: 0\n",
        encoding="utf-8",
    )
    secrets_file = tmp_path / "pharmalink.secrets.yaml"
    secrets_file.write_text(
        "jwt:\n"
        "  secret_key: from-the-secrets-file\n",
        encoding="utf-8",
    )

    cfg = load_settings(settings_path=settings_file, secrets_path=secrets_file)

    assert cfg.server.port == 8080
    assert cfg.logging.level == "debug"
    assert cfg.database.path == "data/chat.duckdb"
    assert cfg.chat.idle_timeout_seconds == 45
    assert cfg.chat.max_connections_per_user == 0
    assert cfg.secrets.jwt.secret_key == "from-the-secrets-file"


def test_environment_overrides_paths(tmp_path, monkeypatch):
    settings_file = tmp_path / "custom.yaml"
    settings_file.write_text("chat:\n  max_message_length: 1000\n", encoding="utf-8")
    monkeypatch.setenv("PHARMALINK_SETTINGS_FILE", str(settings_file))
    monkeypatch.setenv("PHARMALINK_SECRETS_FILE", str(tmp_path / "none.yaml"))

    assert load_settings().chat.max_message_length == 1000


def test_unknown_log_level_is_rejected(tmp_path):
    settings_file = tmp_path / "pharmalink.settings.yaml"
    settings_file.write_text("logging:\n  level: chatty\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_settings(settings_path=settings_file, secrets_path=tmp_path / "none.yaml")


@pytest.mark.parametrize(
    "field, value",
    [("idle_timeout_seconds", 0), ("max_connections_per_user", -1), ("max_message_length", 0)],
)
def test_chat_limits_are_validated(field, value):
    with pytest.raises(ValidationError):
        ChatSettings(**{field: value})


def test_set_and_reset_config(tmp_path, monkeypatch):
    custom = AppSettings(chat=ChatSettings(max_message_length=42))
    set_config(custom)
    assert get_config() is custom

    monkeypatch.setenv("PHARMALINK_SETTINGS_FILE", str(tmp_path / "none.yaml"))
    monkeypatch.setenv("PHARMALINK_SECRETS_FILE", str(tmp_path / "none.yaml"))
    reset_config()
    assert get_config().chat.max_message_length == 500
