"""Zulip linkifier rules compiled into Python match rules.

Zulip stores linkifiers as ``(pattern, url_template)`` pairs where the pattern
uses Python/re2 named groups (``(?P<id>\\d+)``) and the URL template follows
RFC 6570 (``https://tracker/issues/{id}``). Compilation happens in two
separate passes so each can be tested on its own:

1. :func:`convert_pattern` walks the pattern source once and rewrites named
   groups into numbered ones, recording the group number of every name and
   pulling inline flags out of the body.
2. :func:`compile_rule` appends the trailing word boundary, compiles the
   result and parses the URL template.

A :class:`LinkifierSet` is an immutable snapshot. :class:`LinkifierRegistry`
swaps snapshots in a single assignment, so a translator that grabbed
``registry.snapshot`` keeps using one consistent rule set for the whole
message.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from uritemplate import URITemplate

from .errors import PatternCompilationError
from .formatting import CODE_SPAN_RE, PLACEHOLDER_RE, mask_spans, unmask_spans

logger = logging.getLogger(__name__)

MAX_RULES = 500
MAX_PATTERN_LENGTH = 1000

_SUPPORTED_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE}
_INLINE_FLAGS_RE = re.compile(r"\(\?([aiLmsux]+)\)")
_GROUP_PREFIX_RE = re.compile(r"\(\?(?:[:=!>]|<[=!]|[aiLmsux-]+:)")
_UNBOUNDED_BRACE_RE = re.compile(r"\{\d*,\}")
_BOUNDED_BRACE_RE = re.compile(r"\{\d+(?:,\d+)?\}")
_WORD_BOUNDARY_TAIL = r"(?!\w)"

# Existing links and bare URLs are left alone together with code spans.
_PROTECTED_RE = re.compile(
    CODE_SPAN_RE.pattern + r"|\[[^\]\n]*\]\([^)\n]*\)|<?https?://[^\s<>]+>?",
    re.DOTALL,
)


@dataclass(frozen=True, slots=True)
class ConvertedPattern:
    """Result of the rewrite pass."""

    pattern: str
    group_names: tuple[str | None, ...]
    flags: int


@dataclass(frozen=True, slots=True)
class LinkifierRule:
    """One compiled linkifier."""

    source: str
    pattern: re.Pattern[str]
    url_template: URITemplate
    group_names: tuple[str | None, ...]

    def expand(self, match: re.Match[str]) -> str:
        context: dict[str, str] = {}
        for index, name in enumerate(self.group_names, start=1):
            if name is None:
                continue
            value = match.group(index)
            if value is not None:
                context[name] = value
        return self.url_template.expand(context)


@dataclass(frozen=True, slots=True)
class LinkifierSet:
    """Immutable, ordered snapshot of compiled rules."""

    rules: tuple[LinkifierRule, ...] = ()
    version: int = 0

    def __len__(self) -> int:
        return len(self.rules)


EMPTY_LINKIFIERS = LinkifierSet()


def _quantifier_at(pattern: str, index: int) -> str | None:
    """Return the quantifier starting at ``index`` or ``None``."""

    if index >= len(pattern):
        return None
    char = pattern[index]
    if char in "*+?":
        return char
    if char == "{":
        match = _UNBOUNDED_BRACE_RE.match(pattern, index) or _BOUNDED_BRACE_RE.match(
            pattern, index
        )
        if match:
            return match.group(0)
    return None


def _is_unbounded(quantifier: str | None) -> bool:
    return quantifier is not None and (
        quantifier in {"*", "+"} or bool(_UNBOUNDED_BRACE_RE.fullmatch(quantifier))
    )


def convert_pattern(pattern: str) -> ConvertedPattern:
    """Rewrite named groups into numbered groups and extract inline flags.

    Raises :class:`PatternCompilationError` for patterns that are too long,
    have an unterminated group name, reference an unknown group, or nest an
    unbounded quantifier inside another one.
    """

    if len(pattern) > MAX_PATTERN_LENGTH:
        raise PatternCompilationError(pattern, "pattern too long")

    output: list[str] = []
    group_names: list[str | None] = []
    name_to_index: dict[str, int] = {}
    flags = 0
    # One entry per open group: does its body contain an unbounded quantifier?
    open_groups: list[bool] = []
    index = 0
    length = len(pattern)

    while index < length:
        char = pattern[index]

        if char == "\\":
            output.append(pattern[index : index + 2])
            index += 2
            continue

        if char == "[":
            end = index + 1
            if end < length and pattern[end] == "^":
                end += 1
            if end < length and pattern[end] == "]":
                end += 1
            while end < length and pattern[end] != "]":
                end += 2 if pattern[end] == "\\" else 1
            output.append(pattern[index : end + 1])
            index = end + 1
            continue

        if char == "(":
            flag_match = _INLINE_FLAGS_RE.match(pattern, index)
            if flag_match:
                for flag in flag_match.group(1):
                    flags |= _SUPPORTED_FLAGS.get(flag, 0)
                index = flag_match.end()
                continue

            named = None
            if pattern.startswith("(?P<", index):
                named = index + 4
            elif pattern.startswith("(?<", index) and not pattern.startswith(
                ("(?<=", "(?<!"), index
            ):
                named = index + 3
            if named is not None:
                end = pattern.find(">", named)
                if end == -1:
                    raise PatternCompilationError(pattern, "unterminated group name")
                name = pattern[named:end]
                group_names.append(name)
                name_to_index[name] = len(group_names)
                output.append("(")
                open_groups.append(False)
                index = end + 1
                continue

            if pattern.startswith("(?P=", index):
                end = pattern.find(")", index)
                name = pattern[index + 4 : end] if end != -1 else ""
                if name not in name_to_index:
                    raise PatternCompilationError(pattern, f"unknown group reference {name!r}")
                output.append(f"(?:\\{name_to_index[name]})")
                index = end + 1
                continue

            prefix = _GROUP_PREFIX_RE.match(pattern, index)
            if prefix:
                output.append(prefix.group(0))
                index = prefix.end()
            else:
                group_names.append(None)
                output.append("(")
                index += 1
            open_groups.append(False)
            continue

        if char == ")":
            inner_unbounded = open_groups.pop() if open_groups else False
            output.append(char)
            index += 1
            quantifier = _quantifier_at(pattern, index)
            if inner_unbounded and _is_unbounded(quantifier):
                raise PatternCompilationError(pattern, "nested unbounded quantifier")
            if inner_unbounded and open_groups:
                open_groups[-1] = True
            continue

        quantifier = _quantifier_at(pattern, index)
        if quantifier is not None:
            if _is_unbounded(quantifier) and open_groups:
                open_groups[-1] = True
            output.append(quantifier)
            index += len(quantifier)
            continue

        output.append(char)
        index += 1

    return ConvertedPattern(
        pattern="".join(output),
        group_names=tuple(group_names),
        flags=flags,
    )


def compile_rule(pattern: str, url_template: str) -> LinkifierRule:
    converted = convert_pattern(pattern)
    try:
        compiled = re.compile(f"(?:{converted.pattern}){_WORD_BOUNDARY_TAIL}", converted.flags)
    except re.error as exc:
        raise PatternCompilationError(pattern, str(exc)) from exc
    return LinkifierRule(
        source=pattern,
        pattern=compiled,
        url_template=URITemplate(url_template),
        group_names=converted.group_names,
    )


def compile_linkifiers(entries: Iterable[Mapping[str, Any]]) -> tuple[LinkifierRule, ...]:
    """Compile ``entries`` in order, skipping the ones that fail."""

    rules: list[LinkifierRule] = []
    for position, entry in enumerate(entries):
        if position >= MAX_RULES:
            logger.warning("Ignoring linkifiers beyond the first %d", MAX_RULES)
            break
        pattern = str(entry.get("pattern") or "")
        template = str(entry.get("url_template") or entry.get("urlTemplate") or "")
        if not pattern or not template:
            logger.warning("Skipping incomplete linkifier %r", dict(entry))
            continue
        try:
            rules.append(compile_rule(pattern, template))
        except PatternCompilationError as exc:
            logger.warning("Skipping linkifier: %s", exc)
    return tuple(rules)


class LinkifierRegistry:
    """Holder of the current :class:`LinkifierSet`."""

    def __init__(self, initial: LinkifierSet = EMPTY_LINKIFIERS):
        self._snapshot = initial

    @property
    def snapshot(self) -> LinkifierSet:
        return self._snapshot

    def update(self, entries: Iterable[Mapping[str, Any]]) -> LinkifierSet:
        rules = compile_linkifiers(entries)
        snapshot = LinkifierSet(rules=rules, version=self._snapshot.version + 1)
        self._snapshot = snapshot
        logger.info("Linkifiers refreshed: %d rules (version %d)", len(rules), snapshot.version)
        return snapshot


def _overlaps(start: int, end: int, claimed: Sequence[tuple[int, int, str]]) -> bool:
    return any(start < other_end and other_start < end for other_start, other_end, _ in claimed)


def _free_segments(length: int, claimed: Sequence[tuple[int, int, str]]) -> list[tuple[int, int]]:
    segments: list[tuple[int, int]] = []
    position = 0
    for start, end, _ in sorted(claimed):
        if start > position:
            segments.append((position, start))
        position = max(position, end)
    if position < length:
        segments.append((position, length))
    return segments


def apply_linkifiers(text: str, linkifiers: LinkifierSet) -> str:
    """Turn linkifier matches outside code spans into ``[text](<url>)`` links.

    Rules run in their configured order; a later rule only sees the text that
    earlier rules left unclaimed.
    """

    if not text or not linkifiers.rules:
        return text
    masked, saved = mask_spans(text, _PROTECTED_RE)
    # Masked spans are claimed up front so no match can reach into them.
    claimed: list[tuple[int, int, str]] = [
        (span.start(), span.end(), span.group(0)) for span in PLACEHOLDER_RE.finditer(masked)
    ]
    for rule in linkifiers.rules:
        for seg_start, seg_end in _free_segments(len(masked), claimed):
            for match in rule.pattern.finditer(masked, seg_start, seg_end):
                if match.end() == match.start() or _overlaps(match.start(), match.end(), claimed):
                    continue
                try:
                    href = rule.expand(match)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Linkifier %r failed to expand: %s", rule.source, exc)
                    continue
                claimed.append((match.start(), match.end(), f"[{match.group(0)}](<{href}>)"))

    pieces: list[str] = []
    position = 0
    for start, end, replacement in sorted(claimed):
        pieces.append(masked[position:start])
        pieces.append(replacement)
        position = end
    pieces.append(masked[position:])
    return unmask_spans("".join(pieces), saved)
