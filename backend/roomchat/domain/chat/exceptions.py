"""Custom exceptions for the message lifecycle."""

from __future__ import annotations

from typing import Iterable, List, Sequence, Tuple


class ChatError(Exception):
	"""Base class for chat core errors."""

	detail: str = "chat_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class ValidationError(ChatError):
	"""Raised before any write when an intent's payload is unacceptable."""

	detail = "validation_error"


class MessageNotFound(ChatError):
	detail = "message_not_found"


class RoomNotFound(ChatError):
	detail = "room_not_found"


class AlreadyEdited(ChatError):
	"""Raised when a message already carries a committed correction."""

	detail = "already_edited"


class AttachmentFailure(ChatError):
	"""Upload or compression error; absorbed into ``attachment.state == failed``."""

	detail = "attachment_failed"

	def __init__(self, detail: str | None = None, *, retryable: bool = True) -> None:
		super().__init__(detail)
		self.retryable = retryable


class ExternalServiceFailure(ChatError):
	"""Translation or transcription call failed or returned malformed data."""

	detail = "external_service_failed"


CascadeFailureEntry = Tuple[str, str, BaseException]


class CascadeDeletePartialFailure(ChatError):
	"""One or more deletions inside a room cascade failed.

	``failures`` holds ``(group, target, exception)`` entries. Completed
	deletions are never rolled back.
	"""

	detail = "cascade_delete_partial_failure"

	def __init__(self, failures: Iterable[CascadeFailureEntry]) -> None:
		self.failures: List[CascadeFailureEntry] = list(failures)
		groups = sorted({group for group, _, _ in self.failures})
		super().__init__(f"{self.detail}:{','.join(groups)}")
		self.detail = type(self).detail

	@property
	def groups(self) -> Sequence[str]:
		return sorted({group for group, _, _ in self.failures})
