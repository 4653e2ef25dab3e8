"""Room lookup and the per-user recent rooms projection."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from roomchat.infra.documents import SERVER_TIMESTAMP, DocumentStore

from .models import RecentRoom, Room, recent_room_path, recent_rooms_collection, room_path, user_path

DEFAULT_AVATAR_BASE = "https://api.dicebear.com/9.x"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def direct_peer_id(room_id: str, user_id: str) -> Optional[str]:
	"""Return the other participant when ``room_id`` names a direct chat with ``user_id``."""
	if not room_id or not user_id or user_id not in room_id:
		return None
	peer = room_id.replace(user_id, "", 1)
	return peer or None


class RoomIndex:
	def __init__(self, documents: DocumentStore, *, avatar_base_url: str = DEFAULT_AVATAR_BASE) -> None:
		self._documents = documents
		self._avatar_base_url = avatar_base_url.rstrip("/")

	def fallback_photo(self, room_id: str) -> str:
		return f"{self._avatar_base_url}/{room_id}/svg"

	async def resolve_room(self, room_id: str, user_id: str) -> Optional[Room]:
		"""Load room metadata, reading the peer's user record for direct chats."""
		peer_id = direct_peer_id(room_id, user_id)
		if peer_id is not None:
			data = await self._documents.get(user_path(peer_id))
		else:
			data = await self._documents.get(room_path(room_id))
		if data is None:
			return None
		room = Room.from_document(room_id, data, is_direct=peer_id is not None)
		if not room.photo_ref:
			room.photo_ref = self.fallback_photo(room_id)
		return room

	async def touch(self, user_id: str, room: Room) -> None:
		"""Upsert the user's pointer to ``room`` with a fresh activity timestamp."""
		await self._documents.set(
			recent_room_path(user_id, room.id),
			{"name": room.display_name, "photo_ref": room.photo_ref, "timestamp": SERVER_TIMESTAMP},
		)

	async def remove(self, user_id: str, room_id: str) -> None:
		await self._documents.delete(recent_room_path(user_id, room_id))

	async def list_recent(self, user_id: str) -> List[RecentRoom]:
		rows = await self._documents.list(recent_rooms_collection(user_id))
		rooms = [RecentRoom.from_document(room_id, data) for room_id, data in rows]
		rooms.sort(key=lambda item: item.timestamp or _EPOCH, reverse=True)
		return rooms
