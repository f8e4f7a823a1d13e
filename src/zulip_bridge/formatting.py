"""Markup helpers shared by both translation directions."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence
from urllib.parse import quote, unquote

MAX_QUOTE_DEPTH = 8

_FENCE_LINE_RE = re.compile(r"^[ \t]*(`{3,}|~{3,})(.*)$")
_LEADING_FENCE_RE = re.compile(r"^[ \t]*(`{3,})", re.MULTILINE)
_QUOTE_BLOCK_RE = re.compile(r"^(`{3,})quote\n(.*?)\n\1(?!`)[ \t]*(\n|$)", re.MULTILINE | re.DOTALL)
_SPOILER_BLOCK_RE = re.compile(
    r"^(`{3,})spoiler[ \t]*([^\n]*)\n(.*?)\n\1(?!`)[ \t]*(\n|$)", re.MULTILINE | re.DOTALL
)

CODE_SPAN_RE = re.compile(r"(`{3,})[^\n]*\n.*?\n\1(?!`)|`[^`\n]+`", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_QUOTE_KINDS = frozenset({"quote", "spoiler"})

_DISCORD_TIMESTAMP_RE = re.compile(r"<t:(-?\d{1,13})(?::[tTdDfFR])?>")
_ZULIP_TIMESTAMP_RE = re.compile(r"<time:([^>]+)>")

# Private-use code points: never word characters, never typed by users.
_PLACEHOLDER_OPEN = "\ue000"
_PLACEHOLDER_CLOSE = "\ue001"
PLACEHOLDER_RE = re.compile("\ue000([\ue100-\uf8ff])\ue001")


# ----------------------------------------------------------------------
# Fenced blocks
# ----------------------------------------------------------------------
def fence_width(text: str) -> int:
    """Width of a backtick fence that cannot collide with fences inside ``text``."""

    widest = max((len(match.group(1)) for match in _LEADING_FENCE_RE.finditer(text)), default=2)
    return max(3, widest + 1)


def wrap_quote(text: str, kind: str = "quote") -> str:
    fence = "`" * fence_width(text)
    return f"{fence}{kind}\n{text}\n{fence}"


def nest_quotes(text: str, _depth: int = 0) -> str:
    """Turn ``> `` quote lines and ``>>>`` blocks into fenced quote blocks."""

    lines = text.split("\n")
    output: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if line == ">>>" or line.startswith(">>> "):
            block = [line[4:]] + lines[index + 1 :]
            index = len(lines)
        elif line == ">" or line.startswith("> "):
            block = []
            while index < len(lines) and (lines[index] == ">" or lines[index].startswith("> ")):
                block.append(lines[index][2:])
                index += 1
        else:
            output.append(line)
            index += 1
            continue
        inner = "\n".join(block)
        if _depth < MAX_QUOTE_DEPTH:
            inner = nest_quotes(inner, _depth + 1)
        output.append(wrap_quote(inner))
    return "\n".join(output)


def _unnest(text: str, depth: int) -> str:
    def _replace(match: re.Match[str]) -> str:
        inner = match.group(2)
        if depth < MAX_QUOTE_DEPTH and "quote\n" in inner:
            inner = _unnest(inner, depth + 1)
        quoted = "\n".join(f"> {line}" if line else ">" for line in inner.split("\n"))
        return quoted + match.group(3)

    return _QUOTE_BLOCK_RE.sub(_replace, text)


def unnest_quotes(text: str) -> str:
    """Rewrite fenced quote blocks into ``> `` lines, widest fence first.

    Code blocks are left alone, including quote fences written inside them.
    """

    masked, saved = mask_code(text)
    return unmask_quoted_spans(_unnest(masked, 0), saved)


def spoilers_to_discord(text: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        header = match.group(2).strip()
        body = match.group(3)
        rendered = f"||{body}||" if body.strip() else ""
        if header:
            rendered = f"**{header}**\n{rendered}" if rendered else f"**{header}**"
        return rendered + match.group(4)

    masked, saved = mask_code(text)
    return unmask_spans(_SPOILER_BLOCK_RE.sub(_replace, masked), saved)


# ----------------------------------------------------------------------
# Span masking
# ----------------------------------------------------------------------
def _placeholder(index: int) -> str:
    return f"{_PLACEHOLDER_OPEN}{chr(0xE100 + index)}{_PLACEHOLDER_CLOSE}"


def mask_spans(text: str, pattern: re.Pattern[str]) -> tuple[str, list[str]]:
    """Replace every match of ``pattern`` with an opaque placeholder."""

    saved: list[str] = []

    def _store(match: re.Match[str]) -> str:
        saved.append(match.group(0))
        return _placeholder(len(saved) - 1)

    return pattern.sub(_store, text), saved


def mask_code(text: str) -> tuple[str, list[str]]:
    """Mask code blocks and inline code but keep quote and spoiler fences.

    A fence line that closes the innermost open quote or spoiler stays
    visible; every other fence opens a code block that runs to the next bare
    fence of the same width.
    """

    lines = text.split("\n")
    output: list[str] = []
    saved: list[str] = []
    open_fences: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        match = _FENCE_LINE_RE.match(line)
        if match is None:
            output.append(line)
            index += 1
            continue
        fence, info = match.group(1), match.group(2).strip()
        if not info and open_fences and open_fences[-1] == fence:
            open_fences.pop()
            output.append(line)
            index += 1
            continue
        if info.split(" ", 1)[0] in _QUOTE_KINDS:
            open_fences.append(fence)
            output.append(line)
            index += 1
            continue
        end = index + 1
        while end < len(lines):
            closing = _FENCE_LINE_RE.match(lines[end])
            if closing is not None and closing.group(1) == fence and not closing.group(2).strip():
                break
            end += 1
        if end == len(lines):
            # Unterminated fence: not a code block.
            output.append(line)
            index += 1
            continue
        saved.append("\n".join(lines[index : end + 1]))
        output.append(_placeholder(len(saved) - 1))
        index = end + 1

    def _store(span: re.Match[str]) -> str:
        saved.append(span.group(0))
        return _placeholder(len(saved) - 1)

    return _INLINE_CODE_RE.sub(_store, "\n".join(output)), saved


def unmask_spans(text: str, saved: Sequence[str]) -> str:
    if not saved:
        return text
    return PLACEHOLDER_RE.sub(lambda match: saved[ord(match.group(1)) - 0xE100], text)


def unmask_quoted_spans(text: str, saved: Sequence[str]) -> str:
    """Like :func:`unmask_spans`, repeating a line's ``> `` prefix on restored lines."""

    if not saved:
        return text
    lines: list[str] = []
    for line in text.split("\n"):
        prefix = line[: len(line) - len(line.lstrip("> "))]
        restored = unmask_spans(line, saved)
        if prefix:
            head, *rest = restored.split("\n")
            restored = "\n".join(
                [head] + [f"{prefix}{part}" if part else prefix.rstrip() for part in rest]
            )
        lines.append(restored)
    return "\n".join(lines)


def replace_outside_code(text: str, transform: Callable[[str], str]) -> str:
    masked, saved = mask_spans(text, CODE_SPAN_RE)
    return unmask_spans(transform(masked), saved)


async def sub_async(
    pattern: re.Pattern[str],
    text: str,
    replace: Callable[[re.Match[str]], Awaitable[str]],
) -> str:
    """``pattern.sub`` with a coroutine replacement, awaited one match at a time."""

    pieces: list[str] = []
    position = 0
    for match in pattern.finditer(text):
        pieces.append(text[position : match.start()])
        pieces.append(await replace(match))
        position = match.end()
    pieces.append(text[position:])
    return "".join(pieces)


# ----------------------------------------------------------------------
# Timestamps
# ----------------------------------------------------------------------
def discord_timestamps_to_zulip(text: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        try:
            moment = datetime.fromtimestamp(int(match.group(1)), timezone.utc)
        except (OverflowError, OSError, ValueError):
            return match.group(0)
        return f"<time:{moment.strftime('%Y-%m-%dT%H:%M:%SZ')}>"

    return _DISCORD_TIMESTAMP_RE.sub(_replace, text)


def parse_iso_timestamp(value: str) -> datetime | None:
    value = value.strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def zulip_timestamps_to_discord(text: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        moment = parse_iso_timestamp(match.group(1))
        if moment is None:
            return match.group(0)
        return f"<t:{int(moment.timestamp())}:F>"

    return _ZULIP_TIMESTAMP_RE.sub(_replace, text)


# ----------------------------------------------------------------------
# Links
# ----------------------------------------------------------------------
def encode_hash_component(value: str) -> str:
    """Zulip's narrow-URL encoding: percent-encode, then ``%`` becomes ``.``."""

    return quote(value, safe="").replace(".", "%2E").replace("%", ".")


def decode_hash_component(value: str) -> str:
    return unquote(value.replace(".", "%"))


def zulip_narrow_link(
    realm: str, stream: int | str, topic: str, message_id: int | None = None
) -> str:
    """Link to ``topic``; ``stream`` is a stream id or a stream name."""

    operand = stream if isinstance(stream, int) else encode_hash_component(stream)
    link = f"{realm}/#narrow/channel/{operand}/topic/{encode_hash_component(topic)}"
    if message_id is not None:
        link += f"/near/{message_id}"
    return link


def discord_message_link(guild_id: str | None, channel_id: str, message_id: str) -> str:
    return f"https://discord.com/channels/{guild_id or '@me'}/{channel_id}/{message_id}"


# ----------------------------------------------------------------------
# Length limits
# ----------------------------------------------------------------------
def _is_fence_close(line: str, opener: str) -> bool:
    stripped = line.strip()
    return len(stripped) >= len(opener) and set(stripped) == {opener[0]}


def _close_open_fences(lines: Sequence[str]) -> list[str]:
    open_fences: list[str] = []
    for line in lines:
        match = _FENCE_LINE_RE.match(line)
        if not match:
            continue
        fence, info = match.group(1), match.group(2).strip()
        if open_fences and not info and _is_fence_close(line, open_fences[-1]):
            open_fences.pop()
        elif not open_fences or info or len(fence) < len(open_fences[-1]):
            open_fences.append(fence)
    return [*lines, *reversed(open_fences)]


def _render(lines: Sequence[str]) -> str:
    return "\n".join(_close_open_fences(lines)).rstrip()


def _quote_units(lines: Sequence[str]) -> list[tuple[int, int]]:
    """Return ``(start, end)`` line ranges of quote lines and fenced quote blocks."""

    units: list[tuple[int, int]] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        match = _FENCE_LINE_RE.match(line)
        if match:
            fence = match.group(1)
            end = index + 1
            while end < len(lines) and not _is_fence_close(lines[end], fence):
                end += 1
            end = min(end + 1, len(lines))
            if match.group(2).strip() == "quote":
                units.append((index, end))
            index = end
            continue
        if line.startswith(">"):
            units.append((index, index + 1))
        index += 1
    return units


def enforce_length(text: str, limit: int, suffix: str) -> str:
    """Fit ``text`` into ``limit`` characters, ending with ``suffix`` when shortened.

    Quoted lines are dropped from the tail first, then whole lines. Fences
    left open by the cut are closed again. Only a single line that is longer
    than the whole budget is cut, and then at a word boundary.
    """

    if len(text) <= limit:
        return text
    budget = limit - len(suffix)
    if budget <= 0:
        return suffix.strip()[:limit]

    lines = text.split("\n")
    while len(_render(lines)) > budget:
        units = _quote_units(lines)
        if not units:
            break
        start, end = units[-1]
        del lines[start:end]
    while lines and len(_render(lines)) > budget:
        lines.pop()

    body = _render(lines)
    if not body:
        head = text.lstrip()[:budget]
        cut = max(head.rfind(" "), head.rfind("\n"))
        body = (head[:cut] if cut > 0 else head).rstrip()
    return body + suffix
