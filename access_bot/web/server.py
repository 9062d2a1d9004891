"""HTTP endpoint Discord redirects to after a user authorises the bot.

The page only reports the outcome; all verification work happens in
:func:`~access_bot.web.oauth.complete_oauth`.
"""

from __future__ import annotations

import html
import logging

from aiohttp import web

from ..data.models import SessionState
from ..engine.service import AccessService
from ..messages import format_report
from .oauth import OAuthClient, complete_oauth

log = logging.getLogger("access.web")

SERVICE_KEY = web.AppKey("service", AccessService)
OAUTH_KEY = web.AppKey("oauth", OAuthClient)

_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body><h1>{title}</h1><p>{body}</p></body></html>
"""


def _page(title: str, message: str, status: int = 200) -> web.Response:
    body = "<br>".join(html.escape(line) for line in message.splitlines())
    return web.Response(
        text=_PAGE.format(title=html.escape(title), body=body),
        status=status,
        content_type="text/html",
    )


async def health(request: web.Request) -> web.Response:
    return web.Response(text="ok")


async def oauth_callback(request: web.Request) -> web.Response:
    """``GET /callback?code=...&state=<verification id>``."""
    code = request.query.get("code", "")
    state = request.query.get("state", "")
    if not code or not state:
        error = request.query.get("error")
        log.info("Callback without code or state (error=%s)", error)
        return _page("Verification failed", "The authorisation was not completed.", 400)

    report = await complete_oauth(request.app[SERVICE_KEY], request.app[OAUTH_KEY], code, state)
    if report.state == SessionState.VERIFIED:
        return _page("Verified", format_report(report))
    return _page("Verification failed", format_report(report), 400)


def create_app(service: AccessService, oauth: OAuthClient) -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service
    app[OAUTH_KEY] = oauth
    app.router.add_get("/", health)
    app.router.add_get("/callback", oauth_callback)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Serve ``app`` on ``host``:``port``; the caller cleans up the runner."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("Verification callback listening on %s:%d", host, port)
    return runner
