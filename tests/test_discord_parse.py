from __future__ import annotations

from zulip_bridge.discord import parse_channel, parse_message


def test_parse_message_reads_author_and_mentions() -> None:
    message = parse_message(
        {
            "id": "900",
            "channel_id": "100",
            "guild_id": "1",
            "author": {"id": "42", "username": "alice", "global_name": "Alice"},
            "member": {"nick": "Ali"},
            "content": "hi <@7> <#55> <@&3>",
            "mentions": [
                {"id": "7", "username": "bob", "member": {"nick": "Bobby"}},
                {"id": "8", "username": "eve"},
            ],
            "mention_roles": ["3"],
            "mention_channels": [{"id": "55", "name": "general"}],
            "attachments": [{"url": "https://cdn/a.png", "filename": "a.png"}],
            "sticker_items": [{"id": "5", "name": "wave", "format_type": 1}],
            "type": 19,
            "flags": 128,
            "application_id": "999",
            "webhook_id": "321",
        }
    )

    assert message.name == "Ali"
    assert message.author_name == "alice"
    assert message.mention_users == {"7": "Bobby", "8": "eve"}
    assert message.mention_roles == {"3": "3"}
    assert message.mention_channels == {"55": "general"}
    assert message.attachments[0]["filename"] == "a.png"
    assert message.stickers[0]["name"] == "wave"
    assert message.message_type == 19
    assert message.is_loading
    assert message.application_id == "999"
    assert message.webhook_id == "321"


def test_parse_message_reply_and_forward() -> None:
    reply = parse_message(
        {
            "id": "2",
            "channel_id": "100",
            "author": {"id": "42", "username": "alice"},
            "message_reference": {"type": 0, "channel_id": "100", "message_id": "1"},
            "referenced_message": {
                "id": "1",
                "author": {"id": "7", "username": "bob"},
                "content": "first",
            },
        }
    )
    assert reply.reference is not None and reply.reference.message_id == "1"
    assert reply.referenced_message is not None
    assert reply.referenced_message.channel_id == "100"
    assert reply.referenced_message.content == "first"
    assert reply.guild_id is None

    forward = parse_message(
        {
            "id": "3",
            "channel_id": "100",
            "author": {"id": "42", "username": "alice"},
            "message_reference": {"type": 1, "channel_id": "300", "message_id": "9"},
            "message_snapshots": [{"message": {"content": "forwarded", "embeds": []}}],
        }
    )
    assert forward.reference is not None and forward.reference.type == 1
    assert [snapshot.content for snapshot in forward.snapshots] == ["forwarded"]


def test_parse_message_tolerates_sparse_payloads() -> None:
    message = parse_message({"type": "weird", "flags": None}, "100")
    assert message.channel_id == "100"
    assert message.author_name == "Unknown"
    assert message.message_type == 0
    assert message.content == ""


def test_parse_channel() -> None:
    thread = parse_channel({"id": "150", "type": 11, "guild_id": "1", "parent_id": "100"})
    assert thread.is_thread
    assert thread.parent_id == "100"

    text = parse_channel({"type": 0, "name": "general"}, "100")
    assert text.id == "100"
    assert not text.is_thread
    assert text.name == "general"
