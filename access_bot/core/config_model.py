"""Validated, immutable configuration snapshots and their holder.

Raw JSON-shaped definitions are parsed exactly once, here. Nothing
downstream inspects the raw dictionaries again: planners and commands only
ever see a :class:`ConfigModel`.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from ..errors import ConfigError
from .models import (
    Capability,
    ChannelKind,
    ChannelSpec,
    PermissionPreset,
    Role,
    Season,
    UserRecord,
)

log = logging.getLogger("access.config")

_C = Capability

DEFAULT_PRESETS: dict[str, PermissionPreset] = {
    "none": PermissionPreset(
        name="none", deny=frozenset({_C.VIEW_CHANNEL, _C.CONNECT})
    ),
    "read": PermissionPreset(
        name="read",
        allow=frozenset({_C.VIEW_CHANNEL, _C.READ_MESSAGE_HISTORY}),
        deny=frozenset({_C.SEND_MESSAGES}),
    ),
    "readwrite": PermissionPreset(
        name="readwrite",
        allow=frozenset(
            {
                _C.VIEW_CHANNEL,
                _C.READ_MESSAGE_HISTORY,
                _C.SEND_MESSAGES,
                _C.ATTACH_FILES,
                _C.ADD_REACTIONS,
            }
        ),
    ),
    "admin": PermissionPreset(
        name="admin",
        allow=frozenset(
            {
                _C.VIEW_CHANNEL,
                _C.READ_MESSAGE_HISTORY,
                _C.SEND_MESSAGES,
                _C.MANAGE_MESSAGES,
                _C.MANAGE_CHANNELS,
            }
        ),
    ),
}


class _PresetDefinition(BaseModel):
    allow: list[Capability] = Field(default_factory=list)
    deny: list[Capability] = Field(default_factory=list)


class _SeasonDefinition(BaseModel):
    id: str = Field(validation_alias=AliasChoices("id", "season_id"))
    name: str = ""
    active: bool = True
    member_role: str | None = None
    category: str | None = None
    roles: list[Role] = Field(default_factory=list)
    channels: list[ChannelSpec] = Field(default_factory=list)
    users: list[UserRecord] = Field(default_factory=list)


class _RawConfig(BaseModel):
    current_season: str | None = None
    permissions: dict[str, _PresetDefinition] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("permissions", "definitions"),
    )
    roles: list[Role] = Field(default_factory=list)
    channels: list[ChannelSpec] = Field(default_factory=list)
    seasons: list[_SeasonDefinition] = Field(default_factory=list)


@dataclass(frozen=True)
class ConfigModel:
    """One validated configuration snapshot.

    Lookups never fail for names that the snapshot itself references; they
    return ``None`` for names it has never heard of.
    """

    seasons: Mapping[str, Season]
    presets: Mapping[str, PermissionPreset]
    current_season_id: str
    loaded_from: str | None = field(default=None, compare=False)

    def season_by_id(self, season_id: str) -> Season | None:
        return self.seasons.get(season_id)

    def current_season(self) -> Season:
        return self.seasons[self.current_season_id]

    def preset_by_name(self, name: str) -> PermissionPreset | None:
        return self.presets.get(name)

    def role_by_name(self, season_id: str, name: str) -> Role | None:
        season = self.seasons.get(season_id)
        if season is None:
            return None
        return season.role(name)


_T = TypeVar("_T", Role, ChannelSpec)


def _duplicates(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for name in names:
        if name in seen and name not in dupes:
            dupes.append(name)
        seen.add(name)
    return dupes


def _merge_by_name(defaults: list[_T], own: list[_T]) -> tuple[_T, ...]:
    """Season entries replace defaults with the same name and add new ones."""
    overrides = {item.name: item for item in own}
    merged = [overrides.pop(item.name, item) for item in defaults]
    merged.extend(item for item in own if item.name in overrides)
    return tuple(merged)


def _format_validation_error(exc: ValidationError) -> list[str]:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        problems.append(f"{loc}: {err['msg']}")
    return problems


def _build_presets(raw: _RawConfig, problems: list[str]) -> dict[str, PermissionPreset]:
    presets = dict(DEFAULT_PRESETS)
    for name, definition in raw.permissions.items():
        try:
            presets[name] = PermissionPreset(
                name=name,
                allow=frozenset(definition.allow),
                deny=frozenset(definition.deny),
            )
        except ValidationError as exc:
            problems.extend(f"permissions.{name}: {p}" for p in _format_validation_error(exc))
    return presets


def _build_season(
    definition: _SeasonDefinition,
    raw: _RawConfig,
    presets: Mapping[str, PermissionPreset],
    problems: list[str],
) -> Season:
    where = f"season '{definition.id}'"
    for dupe in _duplicates(r.name for r in definition.roles):
        problems.append(f"{where}: role '{dupe}' is declared twice")
    for dupe in _duplicates(c.name for c in definition.channels):
        problems.append(f"{where}: channel '{dupe}' is declared twice")

    roles = _merge_by_name(raw.roles, definition.roles)
    channels = _merge_by_name(raw.channels, definition.channels)
    role_names = {r.name for r in roles}

    defaults = [r.name for r in roles if r.is_default_member_role]
    if len(defaults) > 1:
        problems.append(
            f"{where}: more than one default member role ({', '.join(defaults)})"
        )

    member_role = definition.member_role or (defaults[0] if defaults else None)
    if member_role is None:
        problems.append(f"{where}: no member_role and no default member role")
        member_role = ""
    elif member_role not in role_names:
        problems.append(f"{where}: member_role '{member_role}' is not a declared role")

    for channel in channels:
        if channel.kind == ChannelKind.CATEGORY:
            problems.append(
                f"{where}: channel '{channel.name}' cannot be a category; "
                "each season has its own category"
            )
        for role_name, preset_name in channel.role_permissions.items():
            if role_name not in role_names:
                problems.append(
                    f"{where}: channel '{channel.name}' grants undefined role '{role_name}'"
                )
            if preset_name not in presets:
                problems.append(
                    f"{where}: channel '{channel.name}' references undefined "
                    f"preset '{preset_name}'"
                )

    for dupe in _duplicates(u.external_id for u in definition.users):
        problems.append(f"{where}: external identity '{dupe}' appears twice")
    for user in definition.users:
        for role_name in user.roles:
            if role_name not in role_names:
                problems.append(
                    f"{where}: user '{user.name}' is given undefined role '{role_name}'"
                )

    return Season(
        id=definition.id,
        name=definition.name or definition.id,
        active=definition.active,
        member_role=member_role,
        category=definition.category or definition.name or definition.id,
        roles=roles,
        channels=channels,
        users=tuple(definition.users),
    )


def load_config(raw: Any, source: str | None = None) -> ConfigModel:
    """Validate ``raw`` definitions and build a :class:`ConfigModel`.

    Every problem found is collected and raised together as a
    :class:`ConfigError`; a partially valid configuration is never returned.
    """
    if not isinstance(raw, Mapping):
        raise ConfigError("configuration root must be an object")
    try:
        parsed = _RawConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc

    problems: list[str] = []
    presets = _build_presets(parsed, problems)

    for dupe in _duplicates(d.id for d in parsed.seasons):
        problems.append(f"season '{dupe}' is declared twice")
    seasons: dict[str, Season] = {}
    for definition in parsed.seasons:
        seasons.setdefault(
            definition.id, _build_season(definition, parsed, presets, problems)
        )
    for dupe in _duplicates(s.category for s in seasons.values()):
        problems.append(f"category '{dupe}' is used by more than one season")

    current = parsed.current_season
    if current is None:
        active = [s.id for s in seasons.values() if s.active]
        if len(active) == 1:
            current = active[0]
        else:
            problems.append(
                "current_season is not set and there is not exactly one active season"
            )
    if current is not None:
        if current not in seasons:
            problems.append(f"current_season '{current}' is not a declared season")
        elif not seasons[current].active:
            problems.append(f"current_season '{current}' is not active")

    if problems:
        raise ConfigError(problems)
    assert current is not None
    return ConfigModel(
        seasons=seasons,
        presets=presets,
        current_season_id=current,
        loaded_from=source,
    )


def read_raw_config(path: str | Path) -> dict[str, Any]:
    """Read the raw JSON definitions stored at ``path``."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read config file '{path}': {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse config file '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file '{path}' must contain a JSON object")
    return data


class ConfigHolder:
    """Owns the current :class:`ConfigModel` and swaps it on reload.

    Readers grab :attr:`current` once and keep using that snapshot for the
    whole operation; a concurrent reload only affects later readers.
    """

    def __init__(self, snapshot: ConfigModel) -> None:
        self._snapshot = snapshot
        self._lock = threading.Lock()

    @property
    def current(self) -> ConfigModel:
        return self._snapshot

    def reload(self, raw: Any, source: str | None = None) -> ConfigModel:
        """Replace the snapshot with one built from ``raw``.

        On :class:`ConfigError` the previous snapshot stays in effect.
        """
        with self._lock:
            try:
                snapshot = load_config(raw, source=source)
            except ConfigError as exc:
                log.error("Configuration rejected, keeping previous snapshot: %s", exc)
                raise
            self._snapshot = snapshot
        log.info(
            "Configuration loaded: %d season(s), current season %s",
            len(snapshot.seasons),
            snapshot.current_season_id,
        )
        return snapshot

    def reload_from(self, path: str | Path) -> ConfigModel:
        return self.reload(read_raw_config(path), source=str(path))
