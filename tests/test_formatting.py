from __future__ import annotations

import asyncio
import re

import pytest

from zulip_bridge.formatting import (
    decode_hash_component,
    discord_message_link,
    discord_timestamps_to_zulip,
    encode_hash_component,
    enforce_length,
    fence_width,
    nest_quotes,
    replace_outside_code,
    spoilers_to_discord,
    sub_async,
    unnest_quotes,
    wrap_quote,
    zulip_narrow_link,
    zulip_timestamps_to_discord,
)


def test_nest_quotes_wraps_quote_lines() -> None:
    assert nest_quotes("> a\n> b\nc") == "```quote\na\nb\n```\nc"


def test_nest_quotes_block_quote_takes_rest_of_message() -> None:
    assert nest_quotes("before\n>>> one\ntwo") == "before\n```quote\none\ntwo\n```"


@pytest.mark.parametrize("depth", [1, 2, 3])
def test_quote_nesting_round_trip(depth: int) -> None:
    text = "> " * depth + "deep"
    nested = nest_quotes(text)
    assert nested.startswith("`" * (2 + depth) + "quote\n")
    assert unnest_quotes(nested) == text


def test_wrap_quote_picks_wider_fence() -> None:
    inner = "```py\nprint(1)\n```"
    assert fence_width(inner) == 4
    assert wrap_quote(inner) == f"````quote\n{inner}\n````"


def test_spoilers_become_discord_spoilers() -> None:
    text = "```spoiler Plot\nthe butler\n```\nafter"
    assert spoilers_to_discord(text) == "**Plot**\n||the butler||\nafter"


def test_unnest_quotes_leaves_code_blocks_alone() -> None:
    literal = "````\n```quote\nliteral\n```\n````"
    assert unnest_quotes(literal) == literal
    assert unnest_quotes("````quote\n```\ncode\n\n```\n````\nafter") == (
        "> ```\n> code\n>\n> ```\nafter"
    )


def test_spoilers_inside_code_stay_literal() -> None:
    literal = "````\n```spoiler Plot\nthe butler\n```\n````"
    assert spoilers_to_discord(literal) == literal


def test_replace_outside_code_skips_code() -> None:
    text = "make `this` loud\n```\nand this\n```"
    assert replace_outside_code(text, str.upper) == "MAKE `this` LOUD\n```\nand this\n```"


def test_sub_async_awaits_each_replacement() -> None:
    async def shout(match: re.Match[str]) -> str:
        await asyncio.sleep(0)
        return match.group(0).upper()

    assert asyncio.run(sub_async(re.compile(r"b\w+"), "a big bold cat", shout)) == "a BIG BOLD cat"


def test_timestamps_convert_both_ways() -> None:
    assert discord_timestamps_to_zulip("at <t:0:R>!") == "at <time:1970-01-01T00:00:00Z>!"
    assert zulip_timestamps_to_discord("at <time:1970-01-01T00:00:00Z>!") == "at <t:0:F>!"
    assert zulip_timestamps_to_discord("<time:not a date>") == "<time:not a date>"


def test_hash_component_encoding() -> None:
    encoded = encode_hash_component("a.b c")
    assert encoded == "a.2Eb.20c"
    assert decode_hash_component(encoded) == "a.b c"


def test_links() -> None:
    assert (
        zulip_narrow_link("https://chat.example", 5, "a b", 10)
        == "https://chat.example/#narrow/channel/5/topic/a.20b/near/10"
    )
    assert (
        zulip_narrow_link("https://chat.example", "dev team", "x")
        == "https://chat.example/#narrow/channel/dev.20team/topic/x"
    )
    assert discord_message_link("1", "2", "3") == "https://discord.com/channels/1/2/3"
    assert discord_message_link(None, "2", "3") == "https://discord.com/channels/@me/2/3"


def test_enforce_length_keeps_short_text() -> None:
    assert enforce_length("short", 10, "…") == "short"


def test_enforce_length_drops_whole_lines() -> None:
    result = enforce_length("line one\nline two\nline three", 20, "…")
    assert result == "line one\nline two…"
    assert len(result) <= 20


def test_enforce_length_drops_quotes_first() -> None:
    text = "intro\n> quoted long line here\nend"
    assert enforce_length(text, 15, "!") == "intro\nend!"


def test_enforce_length_closes_open_fences() -> None:
    text = "```\ncode line 1\ncode line 2\ncode line 3\n```"
    result = enforce_length(text, 30, "…")
    assert result == "```\ncode line 1\n```…"


def test_enforce_length_cuts_single_long_line_at_word() -> None:
    result = enforce_length("word " * 100, 50, " [more]")
    assert len(result) <= 50
    assert result.endswith("word [more]")
