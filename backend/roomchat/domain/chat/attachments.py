"""Attachment upload pipeline for room messages.

``begin_upload`` returns a pending attachment synchronously so the caller
can write its message at once. The upload itself runs as a task that
settles to a resolved or failed attachment; it never raises to the caller
and is never cancelled by later user actions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Set, Tuple, TYPE_CHECKING

import ulid
from PIL import Image

from roomchat.infra.blobs import BlobNotFound, BlobStore
from roomchat.obs import metrics as obs_metrics

from .exceptions import AttachmentFailure
from .models import AUDIO, IMAGE, Attachment, AttachmentKind, blob_path

if TYPE_CHECKING:  # pragma: no cover - typing only
	from roomchat.settings import Settings

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPE = "image/jpeg"
DEFAULT_AUDIO_CONTENT_TYPE = "audio/webm"
DEFAULT_MAX_DIMENSION = 1920
DEFAULT_QUALITY = 80


class ImageCompressionError(AttachmentFailure):
	"""Raised when the captured image cannot be decoded or re-encoded."""

	detail = "image_encode_failed"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail, retryable=False)


def new_blob_key() -> str:
	return str(ulid.new())


def _convert_to_rgb(img: Image.Image) -> Image.Image:
	if img.mode in ("RGB", "L"):
		return img
	if img.mode in ("RGBA", "LA", "P"):
		rgba = img.convert("RGBA")
		background = Image.new("RGB", rgba.size, (255, 255, 255))
		background.paste(rgba, mask=rgba.split()[-1])
		return background
	return img.convert("RGB")


def compress_image(raw: bytes, *, max_dimension: int = DEFAULT_MAX_DIMENSION, quality: int = DEFAULT_QUALITY) -> bytes:
	"""Re-encode ``raw`` as JPEG, bounded to ``max_dimension`` on both axes."""
	try:
		with Image.open(BytesIO(raw)) as source:
			source.load()
			img = _convert_to_rgb(source)
			img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
			buffer = BytesIO()
			img.save(buffer, format="JPEG", quality=quality, optimize=True)
	except (OSError, ValueError, Image.DecompressionBombError) as exc:
		raise ImageCompressionError() from exc
	return buffer.getvalue()


@dataclass(slots=True)
class UploadTicket:
	"""Pending attachment plus the task that settles it."""

	attachment: Attachment
	task: "asyncio.Task[Attachment]"

	async def result(self) -> Attachment:
		return await asyncio.shield(self.task)


class AttachmentPipeline:
	def __init__(
		self,
		blobs: BlobStore,
		*,
		image_max_dimension: int = DEFAULT_MAX_DIMENSION,
		image_quality: int = DEFAULT_QUALITY,
		upload_attempts: int = 3,
		retry_backoff_seconds: float = 0.5,
		upload_timeout_seconds: float = 60.0,
	) -> None:
		self._blobs = blobs
		self.image_max_dimension = image_max_dimension
		self.image_quality = image_quality
		self.upload_attempts = max(1, upload_attempts)
		self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
		self.upload_timeout_seconds = upload_timeout_seconds
		self._tasks: Set[asyncio.Task] = set()

	@classmethod
	def from_settings(cls, blobs: BlobStore, settings: "Settings") -> "AttachmentPipeline":
		return cls(
			blobs,
			image_max_dimension=settings.image_max_dimension,
			image_quality=settings.image_quality,
			upload_attempts=settings.upload_attempts,
			retry_backoff_seconds=settings.upload_retry_backoff_seconds,
			upload_timeout_seconds=settings.upload_timeout_seconds,
		)

	@property
	def in_flight(self) -> int:
		return sum(1 for task in self._tasks if not task.done())

	def begin_upload(
		self,
		kind: AttachmentKind,
		raw: bytes,
		target_key: Optional[str] = None,
		*,
		content_type: Optional[str] = None,
	) -> UploadTicket:
		"""Start uploading ``raw`` under ``target_key`` and return the pending attachment.

		Must be called from a running event loop.
		"""
		attachment = Attachment(kind=kind, blob_key=target_key or new_blob_key())
		task = asyncio.get_running_loop().create_task(
			self.upload(attachment, raw, content_type=content_type),
			name=f"upload:{attachment.blob_path}",
		)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		return UploadTicket(attachment=attachment, task=task)

	async def upload(self, attachment: Attachment, raw: bytes, *, content_type: Optional[str] = None) -> Attachment:
		"""Run one upload to completion and return the settled attachment."""
		started = time.monotonic()
		try:
			payload, resolved_type = await self._prepare(attachment.kind, raw, content_type)
			url = await self._put_with_retries(attachment, payload, resolved_type)
		except AttachmentFailure as exc:
			logger.warning(
				"attachment upload failed",
				exc_info=True,
				extra={"blob_path": attachment.blob_path, "reason": exc.detail},
			)
			settled = attachment.failed()
		except Exception:
			logger.error(
				"attachment upload crashed",
				exc_info=True,
				extra={"blob_path": attachment.blob_path},
			)
			settled = attachment.failed()
		else:
			settled = attachment.resolved(url)
		try:
			obs_metrics.observe_attachment_settled(attachment.kind, settled.state, time.monotonic() - started)
		except Exception:
			logger.warning("attachment metrics update failed", exc_info=True)
		return settled

	async def _prepare(self, kind: AttachmentKind, raw: bytes, content_type: Optional[str]) -> Tuple[bytes, str]:
		if not raw:
			raise AttachmentFailure("empty_payload", retryable=False)
		if kind == IMAGE:
			payload = await asyncio.to_thread(
				compress_image,
				raw,
				max_dimension=self.image_max_dimension,
				quality=self.image_quality,
			)
			return payload, IMAGE_CONTENT_TYPE
		if kind == AUDIO:
			return bytes(raw), content_type or DEFAULT_AUDIO_CONTENT_TYPE
		raise AttachmentFailure("unsupported_kind", retryable=False)

	async def _put_once(self, key: str, payload: bytes, content_type: str) -> str:
		try:
			url = await asyncio.wait_for(
				self._blobs.put(key, payload, content_type=content_type),
				timeout=self.upload_timeout_seconds,
			)
		except asyncio.TimeoutError as exc:
			raise AttachmentFailure("upload_timeout") from exc
		except Exception as exc:
			raise AttachmentFailure("upload_failed") from exc
		if not url:
			raise AttachmentFailure("upload_returned_no_url")
		return url

	async def _put_with_retries(self, attachment: Attachment, payload: bytes, content_type: str) -> str:
		for attempt in range(1, self.upload_attempts + 1):
			try:
				return await self._put_once(attachment.blob_path, payload, content_type)
			except AttachmentFailure as exc:
				if not exc.retryable or attempt >= self.upload_attempts:
					raise
				logger.info(
					"retrying attachment upload",
					extra={"blob_path": attachment.blob_path, "attempt": attempt, "reason": exc.detail},
				)
				obs_metrics.inc_upload_retry(attachment.kind)
				await asyncio.sleep(self.retry_backoff_seconds * attempt)
		raise AttachmentFailure("upload_failed")

	async def delete_attachment(self, kind: AttachmentKind, blob_key: str) -> None:
		"""Delete the blob behind an attachment; an absent blob is not an error."""
		key = blob_path(kind, blob_key)
		try:
			await self._blobs.delete(key)
		except BlobNotFound:
			logger.debug("blob already absent", extra={"blob_path": key})

	async def drain(self) -> None:
		"""Wait for every upload started so far to settle."""
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)
