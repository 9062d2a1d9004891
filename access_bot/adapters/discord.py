"""Discord implementation of :class:`~access_bot.adapters.base.PlatformClient`.

The adapter talks to Discord's HTTP API through :mod:`httpx`, which keeps it
fully asynchronous and lets tests swap in an :class:`httpx.MockTransport`.
Configured role, category and channel names are resolved to Discord ids
through cached guild listings that are refreshed once when a name is missing.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.models import Capability, ChannelKind, ChannelSpec, Role
from ..data.models import Overwrite
from ..errors import PlatformError, PlatformErrorKind
from .base import PlatformClient

log = logging.getLogger("access.discord")

CAPABILITY_BITS: dict[Capability, int] = {
    Capability.CREATE_INSTANT_INVITE: 1 << 0,
    Capability.MANAGE_CHANNELS: 1 << 4,
    Capability.ADD_REACTIONS: 1 << 6,
    Capability.PRIORITY_SPEAKER: 1 << 8,
    Capability.STREAM: 1 << 9,
    Capability.VIEW_CHANNEL: 1 << 10,
    Capability.SEND_MESSAGES: 1 << 11,
    Capability.SEND_TTS_MESSAGES: 1 << 12,
    Capability.MANAGE_MESSAGES: 1 << 13,
    Capability.EMBED_LINKS: 1 << 14,
    Capability.ATTACH_FILES: 1 << 15,
    Capability.READ_MESSAGE_HISTORY: 1 << 16,
    Capability.MENTION_EVERYONE: 1 << 17,
    Capability.USE_EXTERNAL_EMOJIS: 1 << 18,
    Capability.CONNECT: 1 << 20,
    Capability.SPEAK: 1 << 21,
    Capability.MUTE_MEMBERS: 1 << 22,
    Capability.DEAFEN_MEMBERS: 1 << 23,
    Capability.MOVE_MEMBERS: 1 << 24,
    Capability.USE_VAD: 1 << 25,
    Capability.MANAGE_ROLES: 1 << 28,
    Capability.MANAGE_WEBHOOKS: 1 << 29,
    Capability.USE_APPLICATION_COMMANDS: 1 << 31,
    Capability.MANAGE_THREADS: 1 << 34,
    Capability.CREATE_PUBLIC_THREADS: 1 << 35,
    Capability.CREATE_PRIVATE_THREADS: 1 << 36,
    Capability.SEND_MESSAGES_IN_THREADS: 1 << 38,
}

_KNOWN_BITS = sum(CAPABILITY_BITS.values())

_ROLE_OVERWRITE = 0

_CATEGORY_TYPE = 4
_CHANNEL_TYPES: dict[ChannelKind, int] = {
    ChannelKind.TEXT: 0,
    ChannelKind.VOICE: 2,
    ChannelKind.NEWS: 5,
    ChannelKind.STAGE: 13,
    ChannelKind.FORUM: 15,
}


def to_bits(capabilities: frozenset[Capability]) -> int:
    bits = 0
    for cap in capabilities:
        bits |= CAPABILITY_BITS[cap]
    return bits


def from_bits(bits: int) -> frozenset[Capability]:
    """Decode the managed part of a permission bitfield."""
    return frozenset(cap for cap, bit in CAPABILITY_BITS.items() if bits & bit)


def overwrite_from_bits(allow: int, deny: int) -> Overwrite:
    """Build an :class:`Overwrite`, keeping unmanaged bits so they show as drift."""
    return Overwrite(
        allow=from_bits(allow),
        deny=from_bits(deny),
        extra_allow=allow & ~_KNOWN_BITS,
        extra_deny=deny & ~_KNOWN_BITS,
    )


def _error_for(response: httpx.Response) -> PlatformError:
    status = response.status_code
    text = response.text[:200]
    if status == 429:
        retry_after: float | None = None
        try:
            retry_after = float(response.json().get("retry_after"))
        except (ValueError, TypeError, AttributeError):
            header = response.headers.get("retry-after")
            retry_after = float(header) if header else None
        return PlatformError(PlatformErrorKind.RATE_LIMITED, text, retry_after)
    if status in (401, 403):
        return PlatformError(PlatformErrorKind.FORBIDDEN, text)
    if status == 404:
        return PlatformError(PlatformErrorKind.NOT_FOUND, text)
    if status >= 500:
        return PlatformError(PlatformErrorKind.TRANSIENT, text)
    return PlatformError(PlatformErrorKind.BAD_REQUEST, text)


class DiscordPlatform(PlatformClient):
    """Platform client that sends requests directly to the Discord HTTP API."""

    api_base = "https://discord.com/api/v10"

    def __init__(
        self, token: str, guild_id: int, client: httpx.AsyncClient | None = None
    ) -> None:
        """Store authentication ``token``, target guild and optional ``client``."""
        self.token = token
        self.guild_id = guild_id
        self.client = client or httpx.AsyncClient()
        self._roles: dict[str, dict[str, Any]] = {}
        self._categories: dict[str, dict[str, Any]] = {}
        # (parent category name or None, channel name) -> channel
        self._channels: dict[tuple[str | None, str], dict[str, Any]] = {}
        self._bot_id: str | None = None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------
    async def _request(self, method: str, path: str, payload: Any = None) -> httpx.Response:
        url = f"{self.api_base}{path}"
        headers = {"Authorization": f"Bot {self.token}"}
        try:
            response = await self.client.request(method, url, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise PlatformError(PlatformErrorKind.TRANSIENT, str(exc)) from exc
        if response.is_success:
            return response
        raise _error_for(response)

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        return response.json()

    def refresh(self) -> None:
        """Forget cached role and channel listings."""
        self._roles.clear()
        self._categories.clear()
        self._channels.clear()

    async def _load_roles(self) -> None:
        roles = await self._get_json(f"/guilds/{self.guild_id}/roles")
        self._roles = {r["name"]: r for r in roles}

    async def _load_channels(self) -> None:
        channels = await self._get_json(f"/guilds/{self.guild_id}/channels")
        categories = {
            str(c["id"]): c for c in channels if int(c.get("type", 0)) == _CATEGORY_TYPE
        }
        self._categories = {c["name"]: c for c in categories.values()}
        self._channels = {}
        for c in channels:
            if str(c["id"]) in categories:
                continue
            parent = categories.get(str(c.get("parent_id")))
            self._channels[(parent["name"] if parent else None, c["name"])] = c

    async def _role(self, name: str) -> dict[str, Any]:
        if name not in self._roles:
            await self._load_roles()
        try:
            return self._roles[name]
        except KeyError:
            raise PlatformError(
                PlatformErrorKind.NOT_FOUND, f"role '{name}' does not exist"
            ) from None

    async def _category(self, name: str) -> dict[str, Any]:
        if name not in self._categories:
            await self._load_channels()
        try:
            return self._categories[name]
        except KeyError:
            raise PlatformError(
                PlatformErrorKind.NOT_FOUND, f"category '{name}' does not exist"
            ) from None

    async def _channel_id(self, name: str, category: str | None = None) -> str:
        key = (category, name)
        if key not in self._channels:
            await self._load_channels()
        try:
            return str(self._channels[key]["id"])
        except KeyError:
            where = f" in category '{category}'" if category else ""
            raise PlatformError(
                PlatformErrorKind.NOT_FOUND, f"channel '{name}'{where} does not exist"
            ) from None

    async def _member(self, user_id: int) -> dict[str, Any]:
        return await self._get_json(f"/guilds/{self.guild_id}/members/{user_id}")

    async def _role_names(self, role_ids: list[str]) -> set[str]:
        by_id = {str(r["id"]): name for name, r in self._roles.items()}
        if any(str(rid) not in by_id for rid in role_ids):
            await self._load_roles()
            by_id = {str(r["id"]): name for name, r in self._roles.items()}
        return {by_id[str(rid)] for rid in role_ids if str(rid) in by_id}

    # ------------------------------------------------------------------
    # Role hierarchy
    # ------------------------------------------------------------------
    async def bot_top_position(self) -> int:
        """Position of the highest role held by the bot itself."""
        if self._bot_id is None:
            me = await self._get_json("/users/@me")
            self._bot_id = str(me["id"])
        member = await self._member(int(self._bot_id))
        await self._load_roles()
        positions = [
            int(r.get("position", 0))
            for r in self._roles.values()
            if str(r["id"]) in {str(rid) for rid in member.get("roles", [])}
        ]
        return max(positions, default=0)

    async def _check_hierarchy(self, name: str) -> dict[str, Any]:
        role = await self._role(name)
        top = await self.bot_top_position()
        if int(role.get("position", 0)) >= top:
            raise PlatformError(
                PlatformErrorKind.FORBIDDEN,
                f"role '{name}' is not below the bot's highest role",
            )
        return role

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def grant_role(self, user_id: int, role: str) -> None:
        target = await self._check_hierarchy(role)
        await self._request(
            "PUT", f"/guilds/{self.guild_id}/members/{user_id}/roles/{target['id']}"
        )

    async def revoke_role(self, user_id: int, role: str) -> None:
        target = await self._check_hierarchy(role)
        await self._request(
            "DELETE", f"/guilds/{self.guild_id}/members/{user_id}/roles/{target['id']}"
        )

    async def set_nickname(self, user_id: int, nickname: str) -> None:
        await self._request(
            "PATCH", f"/guilds/{self.guild_id}/members/{user_id}", {"nick": nickname}
        )

    async def set_channel_overwrite(
        self,
        channel: str,
        role: str,
        overwrite: Overwrite | None,
        category: str | None = None,
    ) -> None:
        channel_id = await self._channel_id(channel, category)
        target = await self._role(role)
        path = f"/channels/{channel_id}/permissions/{target['id']}"
        if overwrite is None:
            try:
                await self._request("DELETE", path)
            except PlatformError as exc:
                # already gone is the state we wanted
                if exc.kind != PlatformErrorKind.NOT_FOUND:
                    raise
            return
        await self._request(
            "PUT",
            path,
            {
                "allow": str(to_bits(overwrite.allow) | overwrite.extra_allow),
                "deny": str(to_bits(overwrite.deny) | overwrite.extra_deny),
                "type": _ROLE_OVERWRITE,
            },
        )

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    async def ensure_role(self, role: Role) -> None:
        attributes = {
            "color": role.color_value,
            "hoist": role.hoist,
            "mentionable": role.mentionable,
        }
        if role.name not in self._roles:
            await self._load_roles()
        existing = self._roles.get(role.name)
        if existing is None:
            response = await self._request(
                "POST", f"/guilds/{self.guild_id}/roles", {"name": role.name, **attributes}
            )
            existing = response.json()
            log.info("Created role %s", role.name)
        elif any(existing.get(key) != value for key, value in attributes.items()):
            response = await self._request(
                "PATCH", f"/guilds/{self.guild_id}/roles/{existing['id']}", attributes
            )
            existing = response.json()
            log.info("Updated role %s", role.name)
        if role.position is not None and int(existing.get("position", 0)) != role.position:
            await self._request(
                "PATCH",
                f"/guilds/{self.guild_id}/roles",
                [{"id": existing["id"], "position": role.position}],
            )
            existing = {**existing, "position": role.position}
        self._roles[role.name] = existing

    async def ensure_category(self, name: str) -> None:
        if name not in self._categories:
            await self._load_channels()
        category = self._categories.get(name)
        if category is None:
            response = await self._request(
                "POST",
                f"/guilds/{self.guild_id}/channels",
                {"name": name, "type": _CATEGORY_TYPE},
            )
            category = self._categories[name] = response.json()
            log.info("Created category %s", name)
        view = CAPABILITY_BITS[Capability.VIEW_CHANNEL]
        everyone = next(
            (
                o
                for o in category.get("permission_overwrites", [])
                if str(o["id"]) == str(self.guild_id)
            ),
            None,
        )
        if everyone is not None and int(everyone.get("deny", 0)) & view:
            return
        # the @everyone role shares the guild's id
        await self._request(
            "PUT",
            f"/channels/{category['id']}/permissions/{self.guild_id}",
            {"allow": "0", "deny": str(view), "type": _ROLE_OVERWRITE},
        )
        category["permission_overwrites"] = [
            {"id": str(self.guild_id), "type": _ROLE_OVERWRITE, "allow": "0", "deny": str(view)}
        ]

    async def ensure_channel(self, category: str, channel: ChannelSpec) -> None:
        parent = await self._category(category)
        key = (category, channel.name)
        if key not in self._channels:
            await self._load_channels()
        existing = self._channels.get(key)
        if existing is None:
            payload: dict[str, Any] = {
                "name": channel.name,
                "type": _CHANNEL_TYPES[channel.kind],
                "parent_id": str(parent["id"]),
            }
            if channel.position is not None:
                payload["position"] = channel.position
            response = await self._request(
                "POST", f"/guilds/{self.guild_id}/channels", payload
            )
            self._channels[key] = response.json()
            log.info("Created channel %s in %s", channel.name, category)
            return
        if int(existing.get("type", 0)) != _CHANNEL_TYPES[channel.kind]:
            log.warning(
                "Channel %s in %s exists with a different type; leaving it as is",
                channel.name,
                category,
            )
        if channel.position is not None and int(existing.get("position", 0)) != channel.position:
            await self._request(
                "PATCH", f"/channels/{existing['id']}", {"position": channel.position}
            )
            self._channels[key] = {**existing, "position": channel.position}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def read_current_roles(self, user_id: int) -> frozenset[str]:
        member = await self._member(user_id)
        return frozenset(await self._role_names(member.get("roles", [])))

    async def read_nickname(self, user_id: int) -> str | None:
        member = await self._member(user_id)
        return member.get("nick")

    async def read_current_overwrites(
        self, channel: str, category: str | None = None
    ) -> dict[str, Overwrite]:
        channel_id = await self._channel_id(channel, category)
        data = await self._get_json(f"/channels/{channel_id}")
        entries = [
            o for o in data.get("permission_overwrites", []) if int(o.get("type", 0)) == _ROLE_OVERWRITE
        ]
        names = await self._role_names([str(o["id"]) for o in entries])
        by_id = {str(r["id"]): name for name, r in self._roles.items() if name in names}
        return {
            by_id[str(o["id"])]: overwrite_from_bits(int(o.get("allow", 0)), int(o.get("deny", 0)))
            for o in entries
            if str(o["id"]) in by_id
        }

    async def send_message(self, channel_id: int, content: str) -> None:
        """Post ``content`` to a channel; used for operator notices."""
        await self._request("POST", f"/channels/{channel_id}/messages", {"content": content})

    async def close(self) -> None:
        """Close the underlying :class:`httpx.AsyncClient`."""
        await self.client.aclose()
