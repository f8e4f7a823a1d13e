"""Bridge configuration loaded from a JSON file and the environment."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .utils import parse_bool

logger = logging.getLogger(__name__)

ZULIP_MAX_MESSAGE_LENGTH = 10_000
ZULIP_MAX_TOPIC_LENGTH = 60
ZULIP_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
DISCORD_MAX_MESSAGE_LENGTH = 2_000
DISCORD_MAX_USERNAME_LENGTH = 80

_DEFAULT_REPLACEMENTS = {":zulip:": "<:zulip:1334889309089562675>"}


@dataclass(slots=True)
class BridgeConfig:
    """Behaviour switches shared by both relay directions."""

    ignored_discord_users: frozenset[str] = frozenset()
    ignored_zulip_users: frozenset[int] = frozenset()
    mentionable_discord_roles: tuple[str, ...] = ()
    mentionable_zulip_groups: frozenset[str] = frozenset()
    text_replacements: Mapping[str, str] = field(
        default_factory=lambda: dict(_DEFAULT_REPLACEMENTS)
    )
    upload_files_to_zulip: bool = False
    discord_username_prefix: str = ""
    discord_username_suffix: str = ""
    default_topic: str = "Discord"
    poll_retry_delay: float = 1.0

    @property
    def zulip_to_discord_replacements(self) -> dict[str, str]:
        return {str(key): str(value) for key, value in self.text_replacements.items()}

    @property
    def discord_to_zulip_replacements(self) -> dict[str, str]:
        return {str(value): str(key) for key, value in self.text_replacements.items()}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BridgeConfig":
        replacements = data.get("text_replacements")
        if not isinstance(replacements, Mapping):
            replacements = dict(_DEFAULT_REPLACEMENTS)
        try:
            retry_delay = max(0.1, float(data.get("poll_retry_delay", 1.0)))
        except (TypeError, ValueError):
            retry_delay = 1.0
        ignored_zulip: set[int] = set()
        for value in data.get("ignored_zulip_users") or []:
            try:
                ignored_zulip.add(int(value))
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric Zulip user id %r", value)
        return cls(
            ignored_discord_users=frozenset(
                str(value) for value in data.get("ignored_discord_users") or []
            ),
            ignored_zulip_users=frozenset(ignored_zulip),
            mentionable_discord_roles=tuple(
                str(value) for value in data.get("mentionable_discord_roles") or []
            ),
            mentionable_zulip_groups=frozenset(
                str(value) for value in data.get("mentionable_zulip_groups") or []
            ),
            text_replacements={str(k): str(v) for k, v in replacements.items()},
            upload_files_to_zulip=parse_bool(data.get("upload_files_to_zulip"), False),
            discord_username_prefix=str(data.get("discord_username_prefix") or ""),
            discord_username_suffix=str(data.get("discord_username_suffix") or ""),
            default_topic=str(data.get("default_topic") or "Discord"),
            poll_retry_delay=retry_delay,
        )


def load_config(path: Path | None) -> BridgeConfig:
    """Read ``path`` if it exists, falling back to defaults otherwise."""

    if path is None or not path.exists():
        if path is not None:
            logger.info("Config file %s not found, using defaults", path)
        return BridgeConfig()
    with path.open(encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, Mapping):
        raise ValueError(f"{path} must contain a JSON object")
    return BridgeConfig.from_mapping(data)


@dataclass(slots=True)
class Credentials:
    """Identities and secrets for both platforms."""

    zulip_realm: str
    zulip_username: str
    zulip_api_key: str
    zulip_user_id: int
    discord_token: str
    discord_application_id: str

    @classmethod
    def from_env(cls, overrides: Mapping[str, str | None] | None = None) -> "Credentials":
        """Build credentials from the environment; ``overrides`` wins when set.

        Raises ``ValueError`` naming every missing variable.
        """

        overrides = overrides or {}
        names = (
            "ZULIP_REALM",
            "ZULIP_USERNAME",
            "ZULIP_API_KEY",
            "ZULIP_ID",
            "DISCORD_TOKEN",
            "DISCORD_ID",
        )
        values = {name: overrides.get(name) or os.getenv(name) or "" for name in names}
        missing = [name for name, value in values.items() if not value.strip()]
        if missing:
            raise ValueError("Missing settings: " + ", ".join(missing))
        try:
            zulip_user_id = int(values["ZULIP_ID"])
        except ValueError as exc:
            raise ValueError("ZULIP_ID must be numeric") from exc
        return cls(
            zulip_realm=values["ZULIP_REALM"].strip().rstrip("/"),
            zulip_username=values["ZULIP_USERNAME"].strip(),
            zulip_api_key=values["ZULIP_API_KEY"].strip(),
            zulip_user_id=zulip_user_id,
            discord_token=values["DISCORD_TOKEN"].strip(),
            discord_application_id=values["DISCORD_ID"].strip(),
        )
