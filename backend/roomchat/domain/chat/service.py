"""Message lifecycle: send, edit, delete and the translation side channels."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Coroutine, Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING

import httpx

from roomchat.domain.rooms.index import RoomIndex
from roomchat.infra.documents import SERVER_TIMESTAMP, DocumentNotFound, DocumentStore
from roomchat.obs import logging as obs_logging
from roomchat.obs import metrics as obs_metrics
from roomchat.settings import Settings

from . import overlay, schemas
from .attachments import AttachmentPipeline, UploadTicket, new_blob_key
from .exceptions import AlreadyEdited, ExternalServiceFailure, MessageNotFound, RoomNotFound, ValidationError
from .feed import RoomFeed
from .models import (
	FAILED,
	RESOLVED,
	Attachment,
	AttachmentDraft,
	EditRecord,
	Message,
	message_path,
	messages_collection,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
	from roomchat.infra.speech import Transcriber
	from roomchat.infra.translation import Translator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def display_time(moment: datetime) -> str:
	"""Client clock rendered as an RFC 1123 GMT string."""
	return format_datetime(moment.astimezone(timezone.utc), usegmt=True)


class MessageStore:
	"""Sole writer of message records, attachment state and corrections."""

	def __init__(
		self,
		documents: DocumentStore,
		pipeline: AttachmentPipeline,
		rooms: RoomIndex,
		*,
		settings: Settings,
		translator: Optional["Translator"] = None,
		transcriber: Optional["Transcriber"] = None,
		http: Optional[httpx.AsyncClient] = None,
	) -> None:
		self._documents = documents
		self._pipeline = pipeline
		self._rooms = rooms
		self._settings = settings
		self._translator = translator
		self._transcriber = transcriber
		self._http = http
		self._tasks: Set[asyncio.Task] = set()
		# Ephemeral client state; never written to the document store.
		self._settled: Dict[str, Attachment] = {}
		self._translations: Dict[Tuple[str, str], str] = {}
		self._transcripts: Dict[str, str] = {}

	# ------------------------------------------------------------------ reads

	async def get_message(self, room_id: str, message_id: str) -> Message:
		data = await self._documents.get(message_path(room_id, message_id))
		if data is None:
			raise MessageNotFound()
		return Message.from_document(room_id, message_id, data)

	async def list_messages(self, room_id: str) -> List[Message]:
		"""Single consistent read of every message in the room, oldest first."""
		rows = await self._documents.list(messages_collection(room_id))
		return [Message.from_document(room_id, message_id, data) for message_id, data in rows]

	async def watch(self, room_id: str) -> RoomFeed:
		return await RoomFeed(self._documents, room_id).start()

	# ------------------------------------------------------------------- send

	async def send(
		self,
		room_id: str,
		author_id: str,
		text: str = "",
		attachment: Optional[AttachmentDraft] = None,
		*,
		author_name: Optional[str] = None,
	) -> str:
		"""Write a message now; an attachment settles later through one follow-up write."""
		text = text or ""
		if not text.strip():
			if attachment is None:
				raise ValidationError("text_or_attachment_required")
			text = ""
		if attachment is not None and not attachment.data:
			raise ValidationError("attachment_empty")

		tokens = obs_logging.bind_context(room_id=room_id, user_id=author_id)
		try:
			room = await self._rooms.resolve_room(room_id, author_id)
			if room is None:
				raise RoomNotFound()
			await self._rooms.touch(author_id, room)

			pending: Optional[Attachment] = None
			if attachment is not None:
				pending = Attachment(kind=attachment.kind, blob_key=new_blob_key())
			message_id = await self._documents.add(
				messages_collection(room_id),
				{
					"author_id": author_id,
					"author_name": author_name,
					"text": text,
					"created_at": SERVER_TIMESTAMP,
					"display_time": display_time(_utcnow()),
					"attachment": pending.to_dict() if pending else None,
					"correction": None,
				},
			)
			if attachment is not None and pending is not None:
				ticket = self._pipeline.begin_upload(
					attachment.kind,
					attachment.data,
					pending.blob_key,
					content_type=attachment.content_type,
				)
				self._spawn(self._settle(room_id, message_id, ticket))
			obs_metrics.inc_message_sent(attachment.kind if attachment else None)
			logger.info("message sent", extra={"message_id": message_id, "has_attachment": pending is not None})
			return message_id
		finally:
			obs_logging.reset_context(tokens)

	def _spawn(self, coro: Coroutine) -> asyncio.Task:
		task = asyncio.get_running_loop().create_task(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		return task

	async def _settle(self, room_id: str, message_id: str, ticket: UploadTicket) -> Attachment:
		settled = await ticket.result()
		self._settled[message_id] = settled
		path = message_path(room_id, message_id)
		try:
			await self._documents.update(path, {"attachment": settled.to_dict()})
		except DocumentNotFound:
			logger.info(
				"message deleted before attachment settled",
				extra={"room_id": room_id, "message_id": message_id, "state": settled.state},
			)
			self._settled.pop(message_id, None)
			if settled.state == RESOLVED:
				await self._discard_blob(settled)
		except Exception:
			# The locally recorded settlement still surfaces through render().
			logger.error(
				"attachment settlement write failed",
				exc_info=True,
				extra={"room_id": room_id, "message_id": message_id, "state": settled.state},
			)
		else:
			# The stored record now carries the terminal state.
			self._settled.pop(message_id, None)
		return settled

	async def _discard_blob(self, attachment: Attachment) -> bool:
		try:
			await self._pipeline.delete_attachment(attachment.kind, attachment.blob_key)
		except Exception:
			logger.warning(
				"attachment blob delete failed",
				exc_info=True,
				extra={"blob_path": attachment.blob_path},
			)
			obs_metrics.inc_message_blob_delete_failure(attachment.kind)
			return False
		return True

	async def wait_for_uploads(self) -> None:
		"""Wait until every attachment started so far has been settled and written."""
		await self._pipeline.drain()
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)

	# ------------------------------------------------------------------- edit

	async def edit_commit(self, room_id: str, message_id: str, new_text: str) -> EditRecord:
		"""Attach a correction; the original ``text`` stays untouched."""
		if not new_text or not new_text.strip():
			raise ValidationError("correction_text_required")
		message = await self.get_message(room_id, message_id)
		if message.correction is not None:
			obs_metrics.inc_edit("rejected")
			raise AlreadyEdited()
		record = EditRecord(original_text=message.text, corrected_text=new_text, edited_at=_utcnow())
		try:
			created = await self._documents.set_field_if_absent(message.path, "correction", record.to_dict())
		except DocumentNotFound as exc:
			raise MessageNotFound() from exc
		if not created:
			obs_metrics.inc_edit("rejected")
			raise AlreadyEdited()
		obs_metrics.inc_edit("committed")
		return record

	# ----------------------------------------------------------------- delete

	async def delete_message(self, room_id: str, message_id: str) -> None:
		"""Delete the message's blob (best effort) and then its record."""
		tokens = obs_logging.bind_context(room_id=room_id, message_id=message_id)
		try:
			path = message_path(room_id, message_id)
			data = await self._documents.get(path)
			if data is None:
				logger.debug("message already deleted")
				return
			message = Message.from_document(room_id, message_id, data)
			if message.attachment is not None:
				await self._discard_blob(message.attachment)
			await self._documents.delete(path)
			self.forget([message_id])
		finally:
			obs_logging.reset_context(tokens)

	def forget(self, message_ids: Iterable[str]) -> None:
		"""Drop every piece of local state held for ``message_ids``."""
		ids = set(message_ids)
		for message_id in ids:
			self._settled.pop(message_id, None)
			self._transcripts.pop(message_id, None)
		for key in [key for key in self._translations if key[0] in ids]:
			self._translations.pop(key, None)

	# ------------------------------------------------------------ translation

	def _target_language(self, target: Optional[str]) -> str:
		language = (target or self._settings.translation_default_language).strip().lower()
		if language not in self._settings.translation_languages:
			raise ValidationError("unsupported_language")
		return language

	async def request_translation(self, message_id: str, text: str, target: Optional[str] = None) -> Optional[str]:
		"""Translate ``text`` and cache it for the message; ``None`` when no result."""
		language = self._target_language(target)
		key = (message_id, language)
		cached = self._translations.get(key)
		if cached is not None:
			return cached
		if self._translator is None:
			obs_metrics.inc_external_call("translation", "unavailable")
			return None
		try:
			translated = await self._translator.translate(text, language)
		except Exception as exc:
			reason = exc.detail if isinstance(exc, ExternalServiceFailure) else type(exc).__name__
			logger.warning("translation failed", exc_info=True, extra={"message_id": message_id, "reason": reason})
			obs_metrics.inc_external_call("translation", "error")
			return None
		if not isinstance(translated, str):
			obs_metrics.inc_external_call("translation", "malformed")
			return None
		obs_metrics.inc_external_call("translation", "ok")
		self._translations[key] = translated
		return translated

	def translation(self, message_id: str, target: Optional[str] = None) -> Optional[str]:
		language = (target or self._settings.translation_default_language).strip().lower()
		return self._translations.get((message_id, language))

	def clear_translation(self, message_id: str, target: Optional[str] = None) -> None:
		"""Drop the cached translation locally; the store is not touched."""
		if target is None:
			for key in [key for key in self._translations if key[0] == message_id]:
				self._translations.pop(key, None)
			return
		self._translations.pop((message_id, target.strip().lower()), None)

	# ---------------------------------------------------------- transcription

	async def _fetch_audio(self, audio_url: str) -> bytes:
		if self._http is None:
			raise ExternalServiceFailure("http_client_unavailable")
		try:
			response = await self._http.get(audio_url, timeout=self._settings.external_timeout_seconds)
			response.raise_for_status()
		except httpx.HTTPError as exc:
			raise ExternalServiceFailure("audio_fetch_failed") from exc
		if not response.content:
			raise ExternalServiceFailure("audio_empty")
		return response.content

	async def request_transcription(self, message_id: str, audio_url: str) -> Optional[str]:
		"""Transcribe the audio at ``audio_url`` and cache it for the message."""
		cached = self._transcripts.get(message_id)
		if cached is not None:
			return cached
		if self._transcriber is None:
			obs_metrics.inc_external_call("speech", "unavailable")
			return None
		try:
			audio = await self._fetch_audio(audio_url)
			transcript = await self._transcriber.transcribe(
				audio,
				encoding=self._settings.speech_encoding,
				sample_rate=self._settings.speech_sample_rate_hertz,
				language_code=self._settings.speech_language_code,
			)
		except Exception as exc:
			reason = exc.detail if isinstance(exc, ExternalServiceFailure) else type(exc).__name__
			logger.warning("transcription failed", exc_info=True, extra={"message_id": message_id, "reason": reason})
			obs_metrics.inc_external_call("speech", "error")
			return None
		if transcript is None:
			obs_metrics.inc_external_call("speech", "empty")
			return None
		obs_metrics.inc_external_call("speech", "ok")
		self._transcripts[message_id] = transcript
		return transcript

	def transcript(self, message_id: str) -> Optional[str]:
		return self._transcripts.get(message_id)

	def clear_transcription(self, message_id: str) -> None:
		self._transcripts.pop(message_id, None)

	# ----------------------------------------------------------------- render

	def current_attachment(self, message: Message) -> Optional[Attachment]:
		"""Stored attachment, or the locally settled one while the store still says pending."""
		attachment = message.attachment
		if attachment is not None and attachment.is_pending:
			settled = self._settled.get(message.id)
			if settled is not None and settled.blob_key == attachment.blob_key:
				return settled
		return attachment

	def render(self, message: Message, *, language: Optional[str] = None) -> schemas.MessageView:
		attachment = self.current_attachment(message)
		edit = overlay.overlay_for(message.correction)
		return schemas.MessageView(
			id=message.id,
			room_id=message.room_id,
			author_id=message.author_id,
			author_name=message.author_name,
			text=message.text,
			display_time=message.display_time,
			created_at=message.created_at,
			attachment=(
				schemas.AttachmentView(
					kind=attachment.kind,
					blob_key=attachment.blob_key,
					state=attachment.state,
					url=attachment.url,
					uploading=attachment.is_pending,
					failed=attachment.state == FAILED,
				)
				if attachment
				else None
			),
			edited=edit is not None,
			overlay=[schemas.DiffTokenView(token=t.token, changed=t.changed) for t in edit.tokens] if edit else [],
			corrected_text=edit.corrected_text if edit else None,
			translation=self.translation(message.id, language),
			transcript=self.transcript(message.id),
		)
