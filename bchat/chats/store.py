"""Message persistence used by the send path.

The realtime layer only needs ``save(envelope)``: it must succeed before an
envelope is published to the relay. The default implementation writes a
:class:`~bchat.chats.models.Chat` row; deployments can point
``BCHAT_MESSAGE_STORE`` at any class with the same coroutine.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING
from typing import Protocol

from channels.db import database_sync_to_async
from django.conf import settings
from django.db import DatabaseError
from django.utils.module_loading import import_string

from bchat.chats.envelope import MessageType
from bchat.chats.models import Chat
from bchat.realtime.exceptions import StoreError

if TYPE_CHECKING:  # import for type checking only
    from bchat.chats.envelope import MessageEnvelope

logger = logging.getLogger(__name__)

MENTION_RE = re.compile(r"@(\w+)")


class MessageStore(Protocol):
    async def save(self, envelope: MessageEnvelope) -> None: ...


def extract_mentions(text: str) -> list[str]:
    """Unique ``@name`` mentions in first-seen order."""

    return list(dict.fromkeys(MENTION_RE.findall(text)))


@database_sync_to_async
def _persist(envelope: MessageEnvelope) -> Chat:
    mentions = (
        extract_mentions(envelope.data)
        if envelope.type == MessageType.TEXT
        else []
    )
    chat = Chat.from_envelope(envelope, mentions=mentions)
    chat.save()
    return chat


class DjangoMessageStore:
    async def save(self, envelope: MessageEnvelope) -> None:
        try:
            await _persist(envelope)
        except DatabaseError as exc:
            logger.warning("Failed to persist message from %s: %s", envelope.user, exc)
            msg = "Failed to save message"
            raise StoreError(msg) from exc


def get_message_store() -> MessageStore:
    return import_string(settings.BCHAT_MESSAGE_STORE)()
