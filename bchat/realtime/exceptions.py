from __future__ import annotations


class ChatError(Exception):
    """Base class for failures raised by the realtime layer."""

    default_message = "Chat operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ChatValidationError(ChatError):
    """Malformed join/send payload. Rejected before touching store or relay."""

    default_message = "Invalid payload"


class ChatAuthorizationError(ChatError):
    """Identity is not entitled to join or post in the requested room."""

    default_message = "Not allowed"


class StoreError(ChatError):
    """Presence store or message persistence call failed."""

    default_message = "Store unavailable"


class TransportError(ChatError):
    """Relay publish/subscribe failed."""

    default_message = "Relay transport unavailable"
