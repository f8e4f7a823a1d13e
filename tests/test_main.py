from __future__ import annotations

from pathlib import Path

import pytest

from zulip_bridge.__main__ import main
from zulip_bridge.store import CorrelationStore

CREDENTIAL_VARS = (
    "ZULIP_REALM",
    "ZULIP_USERNAME",
    "ZULIP_API_KEY",
    "ZULIP_ID",
    "DISCORD_TOKEN",
    "DISCORD_ID",
)


def test_bind_list_and_unbind(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = str(tmp_path / "bridge.db")

    assert main(["--db-path", db, "bind", "100", "5", "general", "--include-threads"]) == 0
    assert main(["--db-path", db, "bind", "200", "6"]) == 0
    assert "Bound 100 to stream 5 > general" in capsys.readouterr().out

    assert main(["--db-path", db, "bindings"]) == 0
    listing = capsys.readouterr().out.splitlines()
    assert listing == ["100\tstream 5 > general (threads)", "200\tstream 6"]

    assert main(["--db-path", db, "unbind", "100"]) == 0
    assert main(["--db-path", db, "unbind", "100"]) == 1

    store = CorrelationStore(db)
    assert [binding.discord_channel_id for binding in store.list_bindings()] == ["200"]
    store.close()


def test_bind_rejects_duplicate_topic(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = str(tmp_path / "bridge.db")
    assert main(["--db-path", db, "bind", "100", "5", "general"]) == 0
    assert main(["--db-path", db, "bind", "101", "5", "general"]) == 1
    assert "Binding rejected" in capsys.readouterr().err


def test_run_without_credentials_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    for name in CREDENTIAL_VARS:
        monkeypatch.delenv(name, raising=False)

    code = main(
        ["--db-path", str(tmp_path / "bridge.db"), "--config", str(tmp_path / "none.json"), "run"]
    )

    assert code == 1
    assert "Missing settings" in caplog.text
