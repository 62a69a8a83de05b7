"""Membership pre-check consulted before a join or a send.

Room ownership and bans live outside the realtime layer. A deployment plugs
its own rule in through ``BCHAT_AUTHORIZATION_POLICY`` (dotted path to a
callable ``policy(identity, room, action) -> bool``; sync or async).
"""

from __future__ import annotations

import inspect
from enum import Enum
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils.module_loading import import_string

from bchat.realtime.exceptions import ChatAuthorizationError

if TYPE_CHECKING:  # import for type checking only
    from collections.abc import Awaitable
    from collections.abc import Callable

    Policy = Callable[[str, str, "Action"], bool | Awaitable[bool]]


class Action(str, Enum):
    JOIN = "join"
    POST = "post"


def allow_all(identity: str, room: str, action: Action) -> bool:
    return True


def get_authorization_policy() -> Policy:
    return import_string(settings.BCHAT_AUTHORIZATION_POLICY)


async def ensure_allowed(policy: Policy, identity: str, room: str, action: Action) -> None:
    allowed = policy(identity, room, action)
    if inspect.isawaitable(allowed):
        allowed = await allowed
    if not allowed:
        target = room or "this conversation"
        msg = f"{identity} may not {action.value} in {target}"
        raise ChatAuthorizationError(msg)
