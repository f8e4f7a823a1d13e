from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from zulip_bridge.models import ChannelBinding, MessageCorrelation, UploadCorrelation
from zulip_bridge.store import CorrelationStore


def _correlation(
    discord_id: str,
    zulip_id: int,
    *,
    channel: str = "100",
    stream: int = 5,
    topic: str = "general",
    source: str = "discord",
) -> MessageCorrelation:
    return MessageCorrelation(
        discord_message_id=discord_id,
        discord_channel_id=channel,
        zulip_message_id=zulip_id,
        zulip_stream_id=stream,
        zulip_topic=topic,
        source=source,
    )


def test_binding_lifecycle(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    store.add_binding(ChannelBinding("100", 5, "general"))
    store.add_binding(ChannelBinding("200", 5, None, include_threads=True))

    binding = store.get_binding("100")
    assert binding == ChannelBinding("100", 5, "general", False)
    assert store.get_binding("missing") is None

    assert [b.discord_channel_id for b in store.list_bindings()] == ["200", "100"]
    assert store.set_include_threads("100", True) is True
    assert store.set_include_threads("missing", True) is False
    assert store.get_binding("100").include_threads is True  # type: ignore[union-attr]

    removed = store.delete_bindings(discord_channel_id="100")
    assert [b.discord_channel_id for b in removed] == ["100"]
    assert store.get_binding("100") is None


def test_topic_binding_wins_over_stream_binding(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    store.add_binding(ChannelBinding("stream-wide", 5, None))
    store.add_binding(ChannelBinding("topic-only", 5, "releases"))

    assert store.find_binding_for_topic(5, "releases").discord_channel_id == "topic-only"  # type: ignore[union-attr]
    assert store.find_binding_for_topic(5, "chatter").discord_channel_id == "stream-wide"  # type: ignore[union-attr]
    assert store.find_binding_for_topic(6, "releases") is None


def test_topic_lookup_ignores_case(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    store.add_binding(ChannelBinding("100", 5, "Releases"))

    assert store.find_binding_for_topic(5, "releases").discord_channel_id == "100"  # type: ignore[union-attr]
    assert store.find_binding_for_topic(5, "RELEASES").discord_channel_id == "100"  # type: ignore[union-attr]
    with pytest.raises(sqlite3.IntegrityError):
        store.add_binding(ChannelBinding("101", 5, "releases"))


def test_duplicate_stream_topic_is_rejected(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    store.add_binding(ChannelBinding("100", 5, "general"))
    with pytest.raises(sqlite3.IntegrityError):
        store.add_binding(ChannelBinding("101", 5, "general"))
    store.add_binding(ChannelBinding("102", 5, None))
    with pytest.raises(sqlite3.IntegrityError):
        store.add_binding(ChannelBinding("103", 5, None))


def test_message_lookup_and_cascade(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    store.add_binding(ChannelBinding("100", 5, "general"))
    store.insert_message(_correlation("d1", 11))
    store.insert_message(_correlation("d2", 12, source="zulip"))

    assert store.find_by_discord_id("d1").zulip_message_id == 11  # type: ignore[union-attr]
    assert store.find_by_zulip_id(12).source == "zulip"  # type: ignore[union-attr]
    assert store.find_by_zulip_id(99) is None
    assert len(store.find_messages(zulip_message_id=[11, 12, 13])) == 2

    with pytest.raises(sqlite3.IntegrityError):
        store.insert_message(_correlation("d1", 13))

    store.delete_bindings(discord_channel_id="100")
    assert store.find_messages(discord_channel_id="100") == []


def test_update_and_delete_messages(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    store.add_binding(ChannelBinding("100", 5, "general"))
    store.insert_message(_correlation("d1", 11))
    store.insert_message(_correlation("d2", 12))

    moved = store.update_messages({"zulip_message_id": [11, 12]}, {"zulip_topic": "moved"})
    assert moved == 2
    assert {c.zulip_topic for c in store.find_messages(discord_channel_id="100")} == {"moved"}

    removed = store.delete_messages(discord_message_id=["d1"])
    assert [c.zulip_message_id for c in removed] == [11]
    assert store.delete_messages(discord_message_id=[]) == []
    assert store.find_by_zulip_id(12) is not None


def test_unfiltered_and_unknown_filters_are_refused(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    with pytest.raises(ValueError):
        store.delete_messages()
    with pytest.raises(ValueError):
        store.find_bindings(channel="100")
    with pytest.raises(ValueError):
        store.update_messages({"zulip_message_id": 1}, {})


def test_upload_correlations(tmp_path: Path) -> None:
    store = CorrelationStore(tmp_path / "bridge.db")
    store.insert_upload(UploadCorrelation("https://cdn/a.png", "/user_uploads/2/ab/a.png"))

    assert store.find_upload("https://cdn/a.png").mirrored_file_id is None  # type: ignore[union-attr]
    updated = store.update_uploads(
        {"mirrored_file_url": "/user_uploads/2/ab/a.png"}, {"mirrored_file_id": 7}
    )
    assert updated == 1
    assert store.find_upload("https://cdn/a.png").mirrored_file_id == 7  # type: ignore[union-attr]

    removed = store.delete_uploads(mirrored_file_id=7)
    assert [u.source_file_url for u in removed] == ["https://cdn/a.png"]
    assert store.find_upload("https://cdn/a.png") is None


def test_data_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "bridge.db"
    store = CorrelationStore(path)
    store.add_binding(ChannelBinding("100", 5, "general"))
    store.insert_message(_correlation("d1", 11))
    store.close()

    reopened = CorrelationStore(path)
    assert reopened.get_binding("100") is not None
    assert reopened.find_by_discord_id("d1") is not None
