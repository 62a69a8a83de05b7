from __future__ import annotations

from datetime import UTC
from datetime import datetime
from typing import Any

from django.utils import timezone
from rest_framework import serializers

from bchat.chats.envelope import DeliveryMode
from bchat.chats.envelope import MessageEnvelope
from bchat.chats.envelope import MessageType
from bchat.chats.envelope import content_from_wire
from bchat.realtime.payloads import claim_identity
from bchat.realtime.payloads import decode_payload
from bchat.realtime.payloads import validate_or_raise


class TimestampField(serializers.DateTimeField):
    """ISO-8601 string or epoch milliseconds (JavaScript ``Date.now()``)."""

    def to_internal_value(self, value):
        if isinstance(value, bool):
            msg = "Invalid timestamp."
            raise serializers.ValidationError(msg)
        if isinstance(value, (int, float)):
            try:
                return datetime.fromtimestamp(value / 1000, tz=UTC)
            except (OverflowError, OSError, ValueError) as exc:
                msg = "Invalid timestamp."
                raise serializers.ValidationError(msg) from exc
        return super().to_internal_value(value).astimezone(UTC)


class EnvelopeSerializer(serializers.Serializer):
    """Validates a chat event coming from a client or from the relay.

    Exactly one delivery mode is derived from the flags:
    - ``broadcast`` truthy wins over everything else;
    - otherwise ``unicast`` requires a non-empty ``toUser``;
    - otherwise the message is room-scoped and requires ``room``.
    """

    user = serializers.CharField(max_length=150)
    room = serializers.CharField(
        max_length=255,
        trim_whitespace=False,
        required=False,
        allow_blank=True,
        allow_null=True,
        default="",
    )
    # Payload must reach recipients byte-identical; CharField still rejects NUL.
    data = serializers.CharField(trim_whitespace=False)
    type = serializers.ChoiceField(choices=MessageType.choices, default=MessageType.TEXT)
    broadcast = serializers.BooleanField(default=False)
    unicast = serializers.BooleanField(default=False)
    toUser = serializers.CharField(  # noqa: N815 - wire field name
        max_length=150,
        required=False,
        allow_blank=True,
        allow_null=True,
        default="",
    )
    time = TimestampField(required=False)

    def validate(self, attrs: dict[str, Any]) -> dict[str, Any]:
        room = attrs.get("room") or ""
        to_user = attrs.get("toUser") or ""

        if attrs["broadcast"]:
            mode = DeliveryMode.BROADCAST
        elif attrs["unicast"]:
            if not to_user:
                msg = "A target identity is required for unicast messages."
                raise serializers.ValidationError({"toUser": msg})
            mode = DeliveryMode.UNICAST
        else:
            if not room.strip():
                msg = "A room is required for group messages."
                raise serializers.ValidationError({"room": msg})
            mode = DeliveryMode.GROUP

        try:
            content = content_from_wire(attrs["type"], attrs["data"])
        except ValueError as exc:
            raise serializers.ValidationError({"data": str(exc)}) from exc

        attrs.update(room=room, toUser=to_user, mode=mode, content=content)
        return attrs

    def to_envelope(self) -> MessageEnvelope:
        data = self.validated_data
        return MessageEnvelope(
            user=data["user"],
            room=data["room"],
            content=data["content"],
            mode=data["mode"],
            to_user=data["toUser"],
            time=data.get("time") or timezone.now(),
        )


def parse_envelope(raw: Any, *, identity: str | None = None) -> MessageEnvelope:
    """Validate a raw chat event and return the envelope.

    ``identity`` is the sender verified at handshake time; when given it
    replaces whatever ``user`` the client put in the payload.
    """

    payload = decode_payload(raw)
    if identity is not None:
        payload = claim_identity(payload, identity)
    serializer = EnvelopeSerializer(data=payload)
    validate_or_raise(serializer)
    return serializer.to_envelope()
