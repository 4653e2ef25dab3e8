"""Domain models for room messages, attachments and edit records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

AttachmentKind = str
AttachmentState = str

IMAGE = "image"
AUDIO = "audio"
ATTACHMENT_KINDS = (IMAGE, AUDIO)

PENDING = "pending"
RESOLVED = "resolved"
FAILED = "failed"
ATTACHMENT_STATES = (PENDING, RESOLVED, FAILED)

# Blob namespace per attachment kind.
KIND_NAMESPACES: Dict[str, str] = {
	IMAGE: "images",
	AUDIO: "audio",
}


def blob_path(kind: AttachmentKind, blob_key: str) -> str:
	try:
		namespace = KIND_NAMESPACES[kind]
	except KeyError as exc:
		raise ValueError(f"unsupported attachment kind: {kind!r}") from exc
	return f"{namespace}/{blob_key}"


@dataclass(frozen=True, slots=True)
class Attachment:
	kind: AttachmentKind
	blob_key: str
	state: AttachmentState = PENDING
	url: Optional[str] = None

	def __post_init__(self) -> None:
		if self.kind not in ATTACHMENT_KINDS:
			raise ValueError(f"unsupported attachment kind: {self.kind!r}")
		if self.state not in ATTACHMENT_STATES:
			raise ValueError(f"unknown attachment state: {self.state!r}")
		if (self.state == RESOLVED) != bool(self.url):
			raise ValueError("url must be present exactly when the attachment is resolved")

	@property
	def blob_path(self) -> str:
		return blob_path(self.kind, self.blob_key)

	@property
	def is_pending(self) -> bool:
		return self.state == PENDING

	def resolved(self, url: str) -> "Attachment":
		return Attachment(kind=self.kind, blob_key=self.blob_key, state=RESOLVED, url=url)

	def failed(self) -> "Attachment":
		return Attachment(kind=self.kind, blob_key=self.blob_key, state=FAILED)

	def to_dict(self) -> dict:
		return {
			"kind": self.kind,
			"blob_key": self.blob_key,
			"state": self.state,
			"url": self.url,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
		return cls(
			kind=str(data["kind"]),
			blob_key=str(data["blob_key"]),
			state=str(data.get("state") or PENDING),
			url=data.get("url") or None,
		)


@dataclass(slots=True)
class AttachmentDraft:
	"""Raw payload captured on the client, not yet uploaded."""

	kind: AttachmentKind
	data: bytes
	content_type: Optional[str] = None

	def __post_init__(self) -> None:
		if self.kind not in ATTACHMENT_KINDS:
			raise ValueError(f"unsupported attachment kind: {self.kind!r}")


@dataclass(frozen=True, slots=True)
class EditRecord:
	original_text: str
	corrected_text: str
	edited_at: datetime

	def to_dict(self) -> dict:
		return {
			"original_text": self.original_text,
			"corrected_text": self.corrected_text,
			"edited_at": self.edited_at,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "EditRecord":
		return cls(
			original_text=str(data["original_text"]),
			corrected_text=str(data["corrected_text"]),
			edited_at=data["edited_at"],
		)


@dataclass(slots=True)
class Message:
	"""A room message as read from the document store."""

	id: str
	room_id: str
	author_id: str
	created_at: Optional[datetime]
	display_time: str
	text: str = ""
	author_name: Optional[str] = None
	attachment: Optional[Attachment] = None
	correction: Optional[EditRecord] = None

	@property
	def path(self) -> str:
		return message_path(self.room_id, self.id)

	@classmethod
	def from_document(cls, room_id: str, message_id: str, data: Dict[str, Any]) -> "Message":
		attachment = data.get("attachment")
		correction = data.get("correction")
		return cls(
			id=message_id,
			room_id=room_id,
			author_id=str(data.get("author_id") or ""),
			author_name=data.get("author_name"),
			text=str(data.get("text") or ""),
			created_at=data.get("created_at"),
			display_time=str(data.get("display_time") or ""),
			attachment=Attachment.from_dict(attachment) if attachment else None,
			correction=EditRecord.from_dict(correction) if correction else None,
		)


def messages_collection(room_id: str) -> str:
	return f"rooms/{room_id}/messages"


def message_path(room_id: str, message_id: str) -> str:
	return f"{messages_collection(room_id)}/{message_id}"
