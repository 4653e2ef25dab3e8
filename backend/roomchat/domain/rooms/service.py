"""Room lifecycle service layer."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple, TYPE_CHECKING

from roomchat.domain.chat.attachments import AttachmentPipeline
from roomchat.domain.chat.exceptions import CascadeDeletePartialFailure, CascadeFailureEntry, ValidationError
from roomchat.domain.chat.models import AUDIO, IMAGE, Message, message_path
from roomchat.infra.documents import SERVER_TIMESTAMP, DocumentStore
from roomchat.obs import logging as obs_logging
from roomchat.obs import metrics as obs_metrics

from .index import RoomIndex
from .models import RecentRoom, Room, recent_room_path, room_path

if TYPE_CHECKING:  # pragma: no cover - typing only
	from roomchat.domain.chat.service import MessageStore

logger = logging.getLogger(__name__)

ROOM_NAME_MAX_LEN = 80

GROUP_INDEX = "index"
GROUP_ROOM = "room"
GROUP_MESSAGES = "messages"
GROUP_BLOBS = "blobs"
GROUP_PLAN = "plan"


@dataclass(slots=True)
class CascadePlan:
	"""Everything a room cascade will delete, captured from one read."""

	room_id: str
	message_ids: List[str] = field(default_factory=list)
	image_keys: List[str] = field(default_factory=list)
	audio_keys: List[str] = field(default_factory=list)

	@classmethod
	def from_messages(cls, room_id: str, messages: Sequence[Message]) -> "CascadePlan":
		plan = cls(room_id=room_id)
		for message in messages:
			plan.message_ids.append(message.id)
			attachment = message.attachment
			if attachment is None:
				continue
			if attachment.kind == AUDIO:
				plan.audio_keys.append(attachment.blob_key)
			elif attachment.kind == IMAGE:
				plan.image_keys.append(attachment.blob_key)
		return plan

	@property
	def blob_count(self) -> int:
		return len(self.image_keys) + len(self.audio_keys)


@dataclass(slots=True)
class CascadeReport:
	room_id: str
	messages_deleted: int = 0
	blobs_deleted: int = 0
	index_deleted: bool = False
	room_deleted: bool = False
	failure: Optional[CascadeDeletePartialFailure] = None

	@property
	def ok(self) -> bool:
		return self.failure is None


_Deletion = Tuple[str, Callable[[], Awaitable[None]]]


async def _run_group(group: str, deletions: Sequence[_Deletion]) -> Tuple[int, List[CascadeFailureEntry]]:
	"""Run one group's deletions concurrently; report successes and failures."""
	results = await asyncio.gather(*(delete() for _, delete in deletions), return_exceptions=True)
	failures: List[CascadeFailureEntry] = []
	done = 0
	for (target, _), result in zip(deletions, results):
		if isinstance(result, Exception):
			failures.append((group, target, result))
			obs_metrics.inc_room_cascade_failure(group)
		elif isinstance(result, BaseException):
			raise result
		else:
			done += 1
	return done, failures


class RoomLifecycle:
	def __init__(
		self,
		documents: DocumentStore,
		messages: "MessageStore",
		pipeline: AttachmentPipeline,
		index: RoomIndex,
	) -> None:
		self._documents = documents
		self._messages = messages
		self._pipeline = pipeline
		self._index = index
		self._deleting: Set[str] = set()

	def is_deleting(self, room_id: str) -> bool:
		return room_id in self._deleting

	async def create_room(self, display_name: str, photo_ref: Optional[str] = None) -> Room:
		name = (display_name or "").strip()
		if not name:
			raise ValidationError("room_name_required")
		if len(name) > ROOM_NAME_MAX_LEN:
			raise ValidationError("room_name_too_long")
		room_id = await self._documents.add(
			"rooms",
			{"name": name, "photo_ref": photo_ref, "created_at": SERVER_TIMESTAMP},
		)
		data = await self._documents.get(room_path(room_id)) or {}
		return Room.from_document(room_id, data)

	async def get_room(self, room_id: str, user_id: str) -> Optional[Room]:
		return await self._index.resolve_room(room_id, user_id)

	async def list_recent_rooms(self, user_id: str) -> List[RecentRoom]:
		return await self._index.list_recent(user_id)

	async def plan_cascade(self, room_id: str) -> CascadePlan:
		messages = await self._messages.list_messages(room_id)
		return CascadePlan.from_messages(room_id, messages)

	async def delete_room(self, room_id: str, requesting_user_id: str) -> CascadeReport:
		"""Best-effort cascade of a room's index entry, record, messages and blobs.

		Failures are logged and reported, never raised; completed deletions
		are not rolled back.
		"""
		self._deleting.add(room_id)
		tokens = obs_logging.bind_context(room_id=room_id, user_id=requesting_user_id)
		report = CascadeReport(room_id=room_id)
		failures: List[CascadeFailureEntry] = []
		try:
			try:
				plan = await self.plan_cascade(room_id)
			except Exception as exc:
				logger.warning("room message read failed; deleting index and room only", exc_info=True)
				obs_metrics.inc_room_cascade_failure(GROUP_PLAN)
				failures.append((GROUP_PLAN, room_id, exc))
				plan = CascadePlan(room_id=room_id)
			groups: List[Tuple[str, Sequence[_Deletion]]] = [
				(
					GROUP_INDEX,
					[(recent_room_path(requesting_user_id, room_id), lambda: self._index.remove(requesting_user_id, room_id))],
				),
				(GROUP_ROOM, [(room_path(room_id), lambda: self._documents.delete(room_path(room_id)))]),
				(GROUP_MESSAGES, [self._message_deletion(room_id, message_id) for message_id in plan.message_ids]),
				(
					GROUP_BLOBS,
					[self._blob_deletion(IMAGE, key) for key in plan.image_keys]
					+ [self._blob_deletion(AUDIO, key) for key in plan.audio_keys],
				),
			]
			# Index and room record are scheduled ahead of message deletion.
			outcomes = await asyncio.gather(*(_run_group(group, deletions) for group, deletions in groups))
			self._messages.forget(plan.message_ids)
			for (group, _), (done, group_failures) in zip(groups, outcomes):
				failures.extend(group_failures)
				if group == GROUP_INDEX:
					report.index_deleted = not group_failures
				elif group == GROUP_ROOM:
					report.room_deleted = not group_failures
				elif group == GROUP_MESSAGES:
					report.messages_deleted = done
				elif group == GROUP_BLOBS:
					report.blobs_deleted = done
			if failures:
				report.failure = CascadeDeletePartialFailure(failures)
				logger.warning(
					"room cascade partially failed",
					extra={
						"groups": list(report.failure.groups),
						"failures": [f"{group}:{target}:{type(exc).__name__}" for group, target, exc in failures],
					},
				)
				obs_metrics.inc_room_cascade("partial")
			else:
				logger.info(
					"room deleted",
					extra={"messages": report.messages_deleted, "blobs": report.blobs_deleted},
				)
				obs_metrics.inc_room_cascade("ok")
		finally:
			self._deleting.discard(room_id)
			obs_logging.reset_context(tokens)
		return report

	def _message_deletion(self, room_id: str, message_id: str) -> _Deletion:
		path = message_path(room_id, message_id)
		return path, lambda: self._documents.delete(path)

	def _blob_deletion(self, kind: str, blob_key: str) -> _Deletion:
		return f"{kind}:{blob_key}", lambda: self._pipeline.delete_attachment(kind, blob_key)
