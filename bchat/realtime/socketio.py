"""Socket.IO server for the web client.

Frontend convention:
- URL base: ws://<host>:<port>
- Socket.IO path: /ws/chat/
- Auth: `query.token` (JWT access token), or `auth: { token }`

Events in: ``join``, ``message``, ``disconnect``.
Events out: ``message``, ``room``, ``roomusers``, ``log``, ``error``.

Handlers only authenticate and enqueue; the per-connection worker inside
:class:`~bchat.realtime.node.ChatNode` does the work.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs

import socketio
from channels.db import database_sync_to_async
from rest_framework.exceptions import AuthenticationFailed
from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

from bchat.realtime.node import ChatNode
from bchat.realtime.node import InboundEvent

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "ws/chat"


@database_sync_to_async
def _get_identity_from_access_token(token: str) -> str:
    jwt_auth = JWTAuthentication()
    validated = jwt_auth.get_validated_token(token)
    user = jwt_auth.get_user(validated)
    return user.get_username()


def _extract_token(environ: dict[str, Any], auth: Any | None) -> str | None:
    """Extract JWT token from Socket.IO environ/auth.

    Handles python-socketio environ shapes across ASGI/WSGI servers.
    """

    scope: Any = environ
    if isinstance(environ, dict) and "asgi.scope" in environ:
        inner = environ.get("asgi.scope")
        if isinstance(inner, dict):
            scope = inner

    query_string: str | bytes = ""
    if isinstance(scope, dict) and "query_string" in scope:
        query_string = scope.get("query_string", b"")
    elif isinstance(scope, dict) and "QUERY_STRING" in scope:
        query_string = scope.get("QUERY_STRING", "")

    if isinstance(query_string, (bytes, bytearray)):
        query_string = query_string.decode(errors="ignore")

    token = parse_qs(str(query_string)).get("token", [None])[0]
    if isinstance(token, str) and token:
        return token

    # Allow `auth: { token }` as fallback.
    if isinstance(auth, dict):
        auth_token = auth.get("token")
        if isinstance(auth_token, str) and auth_token:
            return auth_token

    return None


def _is_expired(token: str) -> bool:
    """Well-formed token whose ``exp`` has passed (signature not checked)."""

    try:
        unverified = AccessToken(token, verify=False)
    except TokenError:
        return False
    try:
        unverified.check_exp()
    except TokenError:
        return True
    return False


async def authenticate(environ: dict[str, Any], auth: Any | None) -> str:
    """Return the verified identity or raise ConnectionRefusedError."""

    token = _extract_token(environ, auth)
    if not token:
        msg = "unauthorized"
        raise ConnectionRefusedError(msg)

    try:
        return await _get_identity_from_access_token(token)
    except (TokenError, AuthenticationFailed) as exc:
        msg = "jwt_expired" if _is_expired(token) else "unauthorized"
        raise ConnectionRefusedError(msg) from exc
    except Exception as exc:
        logger.exception("Socket.IO connect error")
        msg = "server_error"
        raise ConnectionRefusedError(msg) from exc


class ChatNamespace(socketio.AsyncNamespace):
    def __init__(self, node: ChatNode, namespace: str = "/"):
        super().__init__(namespace)
        self.node = node

    async def on_connect(self, sid: str, environ: dict[str, Any], auth: Any | None = None):
        identity = await authenticate(environ, auth)
        await self.save_session(sid, {"identity": identity})
        await self.node.connect(sid, identity)

    async def on_join(self, sid: str, data: Any):
        self.node.submit(sid, InboundEvent.JOIN, data)

    async def on_message(self, sid: str, data: Any):
        self.node.submit(sid, InboundEvent.MESSAGE, data)

    async def on_disconnect(self, sid: str, reason: Any = None):
        self.node.submit(sid, InboundEvent.DISCONNECT)


def create_server(node_factory=ChatNode.from_settings) -> tuple[socketio.AsyncServer, ChatNode]:
    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins="*",
        logger=False,
        engineio_logger=False,
    )
    node = node_factory(sio.emit)
    sio.register_namespace(ChatNamespace(node))
    return sio, node


def create_asgi_app(other_asgi_app, node_factory=ChatNode.from_settings) -> socketio.ASGIApp:
    """Wrap ``other_asgi_app`` with Socket.IO and tie the node to the lifespan.

    The relay is subscribed on startup; if that fails the lifespan startup
    fails and the server never accepts client connections.
    """

    sio, node = create_server(node_factory)
    return socketio.ASGIApp(
        sio,
        other_asgi_app=other_asgi_app,
        socketio_path=SOCKETIO_PATH,
        on_startup=node.start,
        on_shutdown=node.stop,
    )
