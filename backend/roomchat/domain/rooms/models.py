"""Domain models for rooms and the per-user recent rooms index."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(slots=True)
class Room:
    """Room metadata as shown in the chat header."""

    id: str
    display_name: str
    photo_ref: Optional[str] = None
    is_direct: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, room_id: str, data: Dict[str, Any], *, is_direct: bool = False) -> "Room":
        return cls(
            id=room_id,
            display_name=str(data.get("name") or data.get("display_name") or ""),
            photo_ref=data.get("photo_ref") or data.get("photo_url") or None,
            is_direct=is_direct,
            created_at=data.get("created_at"),
        )


@dataclass(slots=True)
class RecentRoom:
    """Sidebar projection of a room a user has written to; never read for message content."""

    room_id: str
    name: str
    photo_ref: Optional[str]
    timestamp: Optional[datetime]

    @classmethod
    def from_document(cls, room_id: str, data: Dict[str, Any]) -> "RecentRoom":
        return cls(
            room_id=room_id,
            name=str(data.get("name") or ""),
            photo_ref=data.get("photo_ref") or None,
            timestamp=data.get("timestamp"),
        )


def room_path(room_id: str) -> str:
    return f"rooms/{room_id}"


def user_path(user_id: str) -> str:
    return f"users/{user_id}"


def recent_rooms_collection(user_id: str) -> str:
    return f"users/{user_id}/chats"


def recent_room_path(user_id: str, room_id: str) -> str:
    return f"{recent_rooms_collection(user_id)}/{room_id}"
