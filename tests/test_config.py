from __future__ import annotations

import json
from pathlib import Path

import pytest

from zulip_bridge.config import BridgeConfig, Credentials, load_config

ENV = {
    "ZULIP_REALM": "https://chat.example/",
    "ZULIP_USERNAME": "bridge-bot@chat.example",
    "ZULIP_API_KEY": "key",
    "ZULIP_ID": "12",
    "DISCORD_TOKEN": "token",
    "DISCORD_ID": "999",
}


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.json")
    assert config == BridgeConfig()
    assert config.discord_to_zulip_replacements == {"<:zulip:1334889309089562675>": ":zulip:"}


def test_load_config_reads_json(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "ignored_discord_users": [123],
                "ignored_zulip_users": ["7", "not-a-number"],
                "mentionable_discord_roles": ["55"],
                "mentionable_zulip_groups": ["team"],
                "text_replacements": {":wave:": "<:wave:1>"},
                "upload_files_to_zulip": "yes",
                "discord_username_suffix": " (Zulip)",
                "default_topic": "bridge",
                "poll_retry_delay": "0.01",
            }
        ),
        encoding="utf-8",
    )
    config = load_config(path)

    assert config.ignored_discord_users == frozenset({"123"})
    assert config.ignored_zulip_users == frozenset({7})
    assert config.mentionable_discord_roles == ("55",)
    assert config.mentionable_zulip_groups == frozenset({"team"})
    assert config.zulip_to_discord_replacements == {":wave:": "<:wave:1>"}
    assert config.upload_files_to_zulip is True
    assert config.discord_username_suffix == " (Zulip)"
    assert config.default_topic == "bridge"
    assert config.poll_retry_delay == 0.1


def test_load_config_rejects_non_objects(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


def test_credentials_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name, value in ENV.items():
        monkeypatch.setenv(name, value)

    credentials = Credentials.from_env({"DISCORD_TOKEN": "override", "ZULIP_API_KEY": None})

    assert credentials.zulip_realm == "https://chat.example"
    assert credentials.zulip_user_id == 12
    assert credentials.zulip_api_key == "key"
    assert credentials.discord_token == "override"


def test_credentials_report_every_missing_setting(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ZULIP_REALM", "https://chat.example")

    with pytest.raises(ValueError) as excinfo:
        Credentials.from_env()
    message = str(excinfo.value)
    assert "ZULIP_USERNAME" in message
    assert "DISCORD_ID" in message
    assert "ZULIP_REALM" not in message


def test_credentials_require_numeric_user_id(monkeypatch: pytest.MonkeyPatch) -> None:
    for name, value in ENV.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv("ZULIP_ID", "bot")

    with pytest.raises(ValueError, match="ZULIP_ID"):
        Credentials.from_env()
