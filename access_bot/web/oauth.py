"""OAuth2 handshake with Discord, producing verification claims.

The verification link handed to a user carries their external identity in
the OAuth ``state`` parameter. When Discord redirects back, the code is
exchanged for a token, the token identifies the Discord account, and the
pair becomes a :class:`~access_bot.data.models.Claim`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from ..data.models import AccessReport, Claim, SessionState
from ..engine.service import AccessService
from ..errors import VerificationError

log = logging.getLogger("access.oauth")


@dataclass(frozen=True)
class DiscordUser:
    id: int
    username: str
    global_name: str | None = None


class OAuthClient:
    """Minimal Discord OAuth2 client built on :mod:`httpx`."""

    api_base = "https://discord.com/api/v10"
    authorize_base = "https://discord.com/oauth2/authorize"
    scopes = ("identify",)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.client = client or httpx.AsyncClient()

    def authorize_url(self, state: str) -> str:
        """Return the URL a user opens to prove their Discord account."""
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": " ".join(self.scopes),
                "state": state,
            }
        )
        return f"{self.authorize_base}?{query}"

    async def exchange_code(self, code: str) -> str:
        """Exchange an authorization ``code`` for an access token."""
        response = await self.client.post(
            f"{self.api_base}/oauth2/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if not response.is_success:
            raise VerificationError("token_exchange_failed", response.text[:200])
        data: dict[str, Any] = response.json()
        return str(data["access_token"])

    async def fetch_user(self, access_token: str) -> DiscordUser:
        """Identify the account that authorised ``access_token``."""
        response = await self.client.get(
            f"{self.api_base}/users/@me",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not response.is_success:
            raise VerificationError("user_lookup_failed", response.text[:200])
        data: dict[str, Any] = response.json()
        return DiscordUser(
            id=int(data["id"]),
            username=data.get("username", ""),
            global_name=data.get("global_name"),
        )

    async def close(self) -> None:
        await self.client.aclose()


async def complete_oauth(
    service: AccessService,
    oauth: OAuthClient,
    code: str,
    state: str,
    season_hint: str | None = None,
) -> AccessReport:
    """Finish the handshake and hand the resulting claim to ``service``.

    Failures of the handshake itself are reported as a rejection of this
    user's attempt; they never propagate to the transport.
    """
    try:
        token = await oauth.exchange_code(code)
        user = await oauth.fetch_user(token)
    except VerificationError as exc:
        log.warning("OAuth handshake failed for state %s: %s", state, exc.reason)
        return AccessReport(0, season_hint, SessionState.REJECTED, exc.reason)
    except httpx.HTTPError as exc:
        log.warning("OAuth handshake failed for state %s: %s", state, exc)
        return AccessReport(0, season_hint, SessionState.REJECTED, "oauth_unavailable")
    claim = Claim(
        external_id=state,
        platform_account_id=user.id,
    )
    return await service.verification_callback(claim, season_hint)
