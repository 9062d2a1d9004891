"""Data models for the season access configuration.

The models are implemented using :mod:`pydantic` so that they provide
runtime validation at the load boundary and convenient serialisation to and
from dictionaries. Every model is frozen: a configuration snapshot is never
mutated in place, it is replaced as a whole.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

_HEX_COLOR = re.compile(r"^#?[0-9A-Fa-f]{6}$")


class Capability(str, Enum):
    """Channel-level permission a preset can allow or deny."""

    CREATE_INSTANT_INVITE = "CREATE_INSTANT_INVITE"
    MANAGE_CHANNELS = "MANAGE_CHANNELS"
    ADD_REACTIONS = "ADD_REACTIONS"
    PRIORITY_SPEAKER = "PRIORITY_SPEAKER"
    STREAM = "STREAM"
    VIEW_CHANNEL = "VIEW_CHANNEL"
    SEND_MESSAGES = "SEND_MESSAGES"
    SEND_TTS_MESSAGES = "SEND_TTS_MESSAGES"
    MANAGE_MESSAGES = "MANAGE_MESSAGES"
    EMBED_LINKS = "EMBED_LINKS"
    ATTACH_FILES = "ATTACH_FILES"
    READ_MESSAGE_HISTORY = "READ_MESSAGE_HISTORY"
    MENTION_EVERYONE = "MENTION_EVERYONE"
    USE_EXTERNAL_EMOJIS = "USE_EXTERNAL_EMOJIS"
    CONNECT = "CONNECT"
    SPEAK = "SPEAK"
    MUTE_MEMBERS = "MUTE_MEMBERS"
    DEAFEN_MEMBERS = "DEAFEN_MEMBERS"
    MOVE_MEMBERS = "MOVE_MEMBERS"
    USE_VAD = "USE_VAD"
    MANAGE_ROLES = "MANAGE_ROLES"
    MANAGE_WEBHOOKS = "MANAGE_WEBHOOKS"
    USE_APPLICATION_COMMANDS = "USE_APPLICATION_COMMANDS"
    MANAGE_THREADS = "MANAGE_THREADS"
    CREATE_PUBLIC_THREADS = "CREATE_PUBLIC_THREADS"
    CREATE_PRIVATE_THREADS = "CREATE_PRIVATE_THREADS"
    SEND_MESSAGES_IN_THREADS = "SEND_MESSAGES_IN_THREADS"


class PermissionPreset(BaseModel):
    """Named allow/deny bundle applied as a channel overwrite.

    Attributes
    ----------
    name:
        Preset identifier referenced from ``role_permissions``.
    allow:
        Capabilities explicitly granted.
    deny:
        Capabilities explicitly denied. Never overlaps ``allow``.

    """

    model_config = ConfigDict(frozen=True)

    name: str
    allow: frozenset[Capability] = frozenset()
    deny: frozenset[Capability] = frozenset()

    @model_validator(mode="after")
    def _disjoint(self) -> PermissionPreset:
        overlap = self.allow & self.deny
        if overlap:
            names = ", ".join(sorted(c.value for c in overlap))
            raise ValueError(f"preset '{self.name}' both allows and denies {names}")
        return self


class Role(BaseModel):
    """A guild role declared by the configuration."""

    model_config = ConfigDict(frozen=True)

    name: str
    color: str | None = None
    hoist: bool = False
    mentionable: bool = False
    position: int | None = None
    is_default_member_role: bool = False

    @field_validator("color")
    @classmethod
    def _hex_color(cls, value: str | None) -> str | None:
        if value is not None and not _HEX_COLOR.match(value):
            raise ValueError(f"color {value!r} is not a #RRGGBB value")
        return value

    @property
    def color_value(self) -> int:
        """The colour as the integer Discord expects, 0 when unset."""
        return int(self.color.lstrip("#"), 16) if self.color else 0


class ChannelKind(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    FORUM = "forum"
    STAGE = "stage"
    NEWS = "news"
    CATEGORY = "category"


class ChannelSpec(BaseModel):
    """A season channel and the preset each role receives on it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    kind: ChannelKind = Field(
        default=ChannelKind.TEXT, validation_alias=AliasChoices("kind", "type")
    )
    position: int | None = None
    role_permissions: dict[str, str] = Field(default_factory=dict)


class UserRecord(BaseModel):
    """A person allowed to verify for one season.

    ``platform_account_id`` stays ``None`` until the first successful
    verification binds it; afterwards it is never overwritten.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(validation_alias=AliasChoices("name", "Name"))
    external_id: str = Field(
        validation_alias=AliasChoices("external_id", "id", "DiscordId")
    )
    platform_account_id: int | None = None
    roles: tuple[str, ...] = ()


class Season(BaseModel):
    """A validated season: its member role, channels and users.

    ``category`` names the private channel category the season's channels
    live under; channel names are only unique within it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    active: bool = True
    member_role: str
    category: str
    roles: tuple[Role, ...] = ()
    channels: tuple[ChannelSpec, ...] = ()
    users: tuple[UserRecord, ...] = ()

    def role(self, name: str) -> Role | None:
        return next((r for r in self.roles if r.name == name), None)

    @property
    def managed_roles(self) -> frozenset[str]:
        """Role names this season is responsible for."""
        return frozenset(r.name for r in self.roles)
