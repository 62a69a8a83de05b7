"""Normalized chat record carried through persistence and the relay.

The wire shape is the one the web client already speaks::

    {user, room, data, type, broadcast: 0|1, unicast: bool, toUser, time}

On the Python side the untyped ``data`` string becomes a content variant keyed
by ``type``, and the ``broadcast``/``unicast`` flag pair becomes a single
:class:`DeliveryMode`.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from enum import Enum
from typing import Any
from typing import ClassVar

from django.db import models
from django.utils.translation import gettext_lazy as _


class MessageType(models.TextChoices):
    TEXT = "text", _("Text")
    IMAGE = "image", _("Image")
    FILE = "file", _("File")
    SYSTEM = "system", _("System")


class DeliveryMode(str, Enum):
    BROADCAST = "broadcast"
    UNICAST = "unicast"
    GROUP = "group"


# Inline data URI, absolute URL or server-relative upload path.
_LINK_RE = re.compile(r"^(data:|https?://|/)")


@dataclass(frozen=True)
class TextContent:
    text: str
    type: ClassVar[str] = MessageType.TEXT

    @property
    def data(self) -> str:
        return self.text


@dataclass(frozen=True)
class SystemContent:
    text: str
    type: ClassVar[str] = MessageType.SYSTEM

    @property
    def data(self) -> str:
        return self.text


@dataclass(frozen=True)
class ImageContent:
    source: str
    type: ClassVar[str] = MessageType.IMAGE

    @property
    def data(self) -> str:
        return self.source

    @property
    def is_inline(self) -> bool:
        return self.source.startswith("data:")


@dataclass(frozen=True)
class FileContent:
    source: str
    type: ClassVar[str] = MessageType.FILE

    @property
    def data(self) -> str:
        return self.source


Content = TextContent | SystemContent | ImageContent | FileContent

_CONTENT_TYPES: dict[str, type[Content]] = {
    MessageType.TEXT: TextContent,
    MessageType.SYSTEM: SystemContent,
    MessageType.IMAGE: ImageContent,
    MessageType.FILE: FileContent,
}


def content_from_wire(kind: str, data: str) -> Content:
    """Build the content variant for a wire ``type``/``data`` pair."""

    try:
        content_cls = _CONTENT_TYPES[kind]
    except KeyError:
        msg = f"Unknown message type: {kind!r}"
        raise ValueError(msg) from None
    if content_cls in (ImageContent, FileContent) and not _LINK_RE.match(data):
        msg = f"{kind} messages must carry a data URI, URL or upload path."
        raise ValueError(msg)
    return content_cls(data)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision, as browsers serialize Dates."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace(
        "+00:00",
        "Z",
    )


@dataclass(frozen=True)
class MessageEnvelope:
    user: str
    content: Content
    mode: DeliveryMode
    time: datetime
    room: str = ""
    to_user: str = ""

    @property
    def data(self) -> str:
        return self.content.data

    @property
    def type(self) -> str:
        return str(self.content.type)

    def to_wire(self) -> dict[str, Any]:
        return {
            "user": self.user,
            "room": self.room,
            "data": self.content.data,
            "type": self.type,
            "broadcast": int(self.mode is DeliveryMode.BROADCAST),
            "unicast": self.mode is DeliveryMode.UNICAST,
            "toUser": self.to_user,
            "time": format_timestamp(self.time),
        }

    def dumps(self) -> str:
        return json.dumps(self.to_wire())
