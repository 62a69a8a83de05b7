"""Redis key layout shared by every node.

- ``roomBCHAT``        list, every room name in creation order
- ``{room}``           string flag, "1" once the room exists
- ``{room}_meta``      list, roster of identities in join order (append-only)
"""

from __future__ import annotations

ROOM_LIST_KEY = "roomBCHAT"
ROOM_FLAG_KEY = "{room}"
ROSTER_KEY = "{room}_meta"


def room_list_key(prefix: str = "") -> str:
    return f"{prefix}{ROOM_LIST_KEY}"


def room_flag_key(room: str, prefix: str = "") -> str:
    return prefix + ROOM_FLAG_KEY.format(room=room)


def roster_key(room: str, prefix: str = "") -> str:
    return prefix + ROSTER_KEY.format(room=room)


def is_reserved_room_name(room: str) -> bool:
    """Room flags share the keyspace with the room list and rosters."""

    return room == ROOM_LIST_KEY or room.endswith(ROSTER_KEY.format(room=""))
