from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models
from django.utils import timezone

from bchat.chats.envelope import MessageType

if TYPE_CHECKING:  # import for type checking only
    from bchat.chats.envelope import MessageEnvelope

PREVIEW_LENGTH = 100


class Chat(models.Model):
    """A persisted chat event, one row per envelope accepted from a client."""

    user = models.CharField(max_length=150)
    room = models.CharField(max_length=255, blank=True, default="")
    data = models.TextField()
    type = models.CharField(
        max_length=16,
        choices=MessageType.choices,
        default=MessageType.TEXT,
    )
    time = models.DateTimeField(default=timezone.now)
    broadcast = models.PositiveSmallIntegerField(default=0)
    unicast = models.BooleanField(default=False)
    to_user = models.CharField(max_length=150, blank=True, default="")
    mentions = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ["time"]
        indexes = [
            models.Index(fields=["room", "time"], name="chats_chat_room_4b1f2e_idx"),
            models.Index(fields=["user", "time"], name="chats_chat_user_9c0d3a_idx"),
            models.Index(
                fields=["to_user", "time"],
                name="chats_chat_to_user_7e5a61_idx",
            ),
        ]

    def __str__(self) -> str:
        target = self.to_user if self.unicast else (self.room or "*")
        return f"{self.user} -> {target}: {self.preview}"

    @property
    def preview(self) -> str:
        if self.type == MessageType.TEXT:
            if len(self.data) > PREVIEW_LENGTH:
                return f"{self.data[:PREVIEW_LENGTH]}..."
            return self.data
        return f"[{self.type.upper()}]"

    def is_broadcast(self) -> bool:
        return self.broadcast == 1

    def is_direct_message(self) -> bool:
        return bool(self.unicast and self.to_user)

    def is_group_message(self) -> bool:
        return not self.unicast and self.broadcast == 0

    @classmethod
    def from_envelope(
        cls,
        envelope: MessageEnvelope,
        *,
        mentions: list[str] | None = None,
    ) -> Chat:
        wire = envelope.to_wire()
        return cls(
            user=envelope.user,
            room=envelope.room,
            data=envelope.data,
            type=envelope.type,
            time=envelope.time,
            broadcast=wire["broadcast"],
            unicast=wire["unicast"],
            to_user=envelope.to_user,
            mentions=mentions or [],
        )
