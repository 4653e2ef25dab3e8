"""Blob storage handles for attachment payloads.

Keys are namespaced by attachment kind (``images/{blob_key}``,
``audio/{blob_key}``). ``delete`` is idempotent on missing keys.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Protocol


class BlobNotFound(LookupError):
	"""Raised when a blob key has no stored payload."""

	def __init__(self, key: str) -> None:
		super().__init__(key)
		self.key = key


class BlobStore(Protocol):
	async def put(self, key: str, data: bytes, *, content_type: str) -> str:
		...

	async def get(self, key: str) -> str:
		...

	async def delete(self, key: str) -> None:
		...


def _validate_key(key: str) -> str:
	cleaned = key.strip("/")
	parts = cleaned.split("/")
	if not cleaned or any(part in ("", ".", "..") for part in parts):
		raise ValueError(f"invalid blob key: {key!r}")
	return cleaned


@dataclass(slots=True)
class StoredBlob:
	data: bytes
	content_type: str


class InMemoryBlobStore:
	"""Blob store used in tests and local development."""

	def __init__(self, *, base_url: str = "memory://blobs") -> None:
		self._lock = asyncio.Lock()
		self._base_url = base_url.rstrip("/")
		self.blobs: Dict[str, StoredBlob] = {}

	def _url(self, key: str) -> str:
		return f"{self._base_url}/{key}"

	async def put(self, key: str, data: bytes, *, content_type: str) -> str:
		key = _validate_key(key)
		async with self._lock:
			self.blobs[key] = StoredBlob(data=bytes(data), content_type=content_type)
		return self._url(key)

	async def get(self, key: str) -> str:
		key = _validate_key(key)
		async with self._lock:
			if key not in self.blobs:
				raise BlobNotFound(key)
		return self._url(key)

	async def delete(self, key: str) -> None:
		key = _validate_key(key)
		async with self._lock:
			self.blobs.pop(key, None)


class LocalBlobStore:
	"""Blob store writing files below ``root`` and serving them from ``base_url``."""

	def __init__(self, root: Path | str, *, base_url: str) -> None:
		self._root = Path(root)
		self._base_url = base_url.rstrip("/")

	def _path(self, key: str) -> Path:
		return self._root / _validate_key(key)

	def _url(self, key: str) -> str:
		return f"{self._base_url}/{_validate_key(key)}"

	@staticmethod
	def _write(path: Path, data: bytes) -> None:
		path.parent.mkdir(parents=True, exist_ok=True)
		tmp = path.with_name(f".{path.name}.tmp")
		tmp.write_bytes(data)
		tmp.replace(path)

	async def put(self, key: str, data: bytes, *, content_type: str) -> str:
		path = self._path(key)
		await asyncio.to_thread(self._write, path, bytes(data))
		return self._url(key)

	async def get(self, key: str) -> str:
		path = self._path(key)
		exists = await asyncio.to_thread(path.is_file)
		if not exists:
			raise BlobNotFound(key)
		return self._url(key)

	async def delete(self, key: str) -> None:
		path = self._path(key)
		await asyncio.to_thread(path.unlink, missing_ok=True)
