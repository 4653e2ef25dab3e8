"""Push feed consumer keeping the current ordered view of a room."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from roomchat.infra.documents import DocumentStore, Snapshot

from .models import Message, messages_collection

logger = logging.getLogger(__name__)

FeedListener = Callable[[List[Message]], None]


class RoomFeed:
	"""Holds the latest snapshot of a room's messages.

	Each delivery replaces the whole view; nothing is patched incrementally.
	"""

	def __init__(self, documents: DocumentStore, room_id: str) -> None:
		self._documents = documents
		self.room_id = room_id
		self.messages: List[Message] = []
		self.deliveries = 0
		self._by_id: Dict[str, Message] = {}
		self._listeners: List[FeedListener] = []
		self._unsubscribe: Optional[Callable[[], None]] = None

	@property
	def active(self) -> bool:
		return self._unsubscribe is not None

	async def start(self) -> "RoomFeed":
		if self._unsubscribe is None:
			self._unsubscribe = await self._documents.subscribe(messages_collection(self.room_id), self._on_snapshot)
		return self

	def stop(self) -> None:
		if self._unsubscribe is not None:
			self._unsubscribe()
			self._unsubscribe = None

	async def __aenter__(self) -> "RoomFeed":
		return await self.start()

	async def __aexit__(self, *exc_info) -> None:
		self.stop()

	def add_listener(self, listener: FeedListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _remove

	def get(self, message_id: str) -> Optional[Message]:
		return self._by_id.get(message_id)

	async def _on_snapshot(self, snapshot: Snapshot) -> None:
		messages: List[Message] = []
		for message_id, data in snapshot:
			try:
				messages.append(Message.from_document(self.room_id, message_id, data))
			except (KeyError, TypeError, ValueError):
				logger.warning(
					"skipping malformed message document",
					exc_info=True,
					extra={"room_id": self.room_id, "message_id": message_id},
				)
		self.messages = messages
		self._by_id = {message.id: message for message in messages}
		self.deliveries += 1
		for listener in list(self._listeners):
			listener(list(self.messages))
