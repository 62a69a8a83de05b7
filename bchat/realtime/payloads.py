"""Helpers for turning raw Socket.IO event data into validated dicts."""

from __future__ import annotations

import json
import re
from typing import Any

from django.conf import settings
from rest_framework import serializers

from bchat.presence import keys
from bchat.realtime.exceptions import ChatAuthorizationError
from bchat.realtime.exceptions import ChatValidationError


def decode_payload(raw: Any) -> dict[str, Any]:
    """Accept either a dict or the JSON string the web client emits."""

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode(errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            msg = "Payload is not valid JSON"
            raise ChatValidationError(msg) from exc
    if not isinstance(raw, dict):
        msg = "Payload must be an object"
        raise ChatValidationError(msg)
    return raw


def claim_identity(payload: dict[str, Any], identity: str) -> dict[str, Any]:
    """Stamp the authenticated identity onto a payload.

    A payload may omit ``user``; if it names someone else it is rejected.
    """

    claimed = payload.get("user")
    if claimed not in (None, "", identity):
        msg = "User does not match the authenticated identity"
        raise ChatAuthorizationError(msg)
    return {**payload, "user": identity}


def flatten_errors(errors: Any) -> str:
    if isinstance(errors, dict):
        parts = []
        for field, value in errors.items():
            text = flatten_errors(value)
            parts.append(text if field == "non_field_errors" else f"{field}: {text}")
        return "; ".join(parts)
    if isinstance(errors, list):
        return " ".join(flatten_errors(item) for item in errors)
    return str(errors)


def validate_or_raise(serializer: serializers.Serializer) -> dict[str, Any]:
    if not serializer.is_valid():
        raise ChatValidationError(flatten_errors(serializer.errors))
    return serializer.validated_data


class JoinSerializer(serializers.Serializer):
    room = serializers.CharField(max_length=255)
    user = serializers.CharField(max_length=150)

    def validate_room(self, value: str) -> str:
        pattern = self.context.get("room_pattern") or settings.BCHAT_ROOM_NAME_PATTERN
        if not re.fullmatch(pattern, value):
            msg = "Room name can only contain letters, numbers, underscores, and hyphens"
            raise serializers.ValidationError(msg)
        if keys.is_reserved_room_name(value):
            msg = f"Room name {value!r} is reserved"
            raise serializers.ValidationError(msg)
        return value
