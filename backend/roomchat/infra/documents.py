"""Document store handles for message, room and index records.

Paths follow a collection/document layout: ``rooms/{room_id}`` is a
document, ``rooms/{room_id}/messages`` is a collection and
``rooms/{room_id}/messages/{message_id}`` a document inside it.

Every write to a collection delivers the collection's full ordered
snapshot to its subscribers; consumers treat each delivery as a
replacement of their view, never as a patch.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis
import ulid

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Snapshot = List[Tuple[str, Document]]
Listener = Callable[[Snapshot], Awaitable[None]]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class _ServerTimestamp:
	"""Placeholder replaced by the store's clock when a document is written."""

	_instance: Optional["_ServerTimestamp"] = None

	def __new__(cls) -> "_ServerTimestamp":
		if cls._instance is None:
			cls._instance = super().__new__(cls)
		return cls._instance

	def __repr__(self) -> str:
		return "SERVER_TIMESTAMP"

	def __deepcopy__(self, memo: dict) -> "_ServerTimestamp":
		return self


SERVER_TIMESTAMP = _ServerTimestamp()


class DocumentNotFound(LookupError):
	"""Raised when a field-level write targets a document that does not exist."""

	def __init__(self, path: str) -> None:
		super().__init__(path)
		self.path = path


def split_path(path: str) -> Tuple[str, str]:
	"""Return ``(collection, doc_id)`` for a document path."""
	parts = [part for part in path.strip("/").split("/") if part]
	if len(parts) < 2 or len(parts) % 2:
		raise ValueError(f"not a document path: {path!r}")
	return "/".join(parts[:-1]), parts[-1]


def _check_collection(collection: str) -> str:
	parts = [part for part in collection.strip("/").split("/") if part]
	if not parts or len(parts) % 2 == 0:
		raise ValueError(f"not a collection path: {collection!r}")
	return "/".join(parts)


def _sort_key(item: Tuple[str, Document]) -> Tuple[datetime, str]:
	doc_id, data = item
	created = data.get("created_at")
	if not isinstance(created, datetime):
		created = _EPOCH
	return created, doc_id


class _MonotonicClock:
	"""UTC clock that never repeats or goes backwards within one store."""

	def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
		self._clock = clock or (lambda: datetime.now(timezone.utc))
		self._last: Optional[datetime] = None

	def __call__(self) -> datetime:
		now = self._clock()
		if self._last is not None and now <= self._last:
			now = self._last + timedelta(microseconds=1)
		self._last = now
		return now


def _resolve_sentinels(value: Any, now: datetime) -> Any:
	if value is SERVER_TIMESTAMP:
		return now
	if isinstance(value, dict):
		return {key: _resolve_sentinels(nested, now) for key, nested in value.items()}
	if isinstance(value, list):
		return [_resolve_sentinels(item, now) for item in value]
	return value


class DocumentStore(Protocol):
	"""Keyed read/write/delete of message and room records."""

	async def add(self, collection: str, data: Document) -> str:
		...

	async def set(self, path: str, data: Document) -> None:
		...

	async def get(self, path: str) -> Optional[Document]:
		...

	async def update(self, path: str, fields: Document) -> None:
		...

	async def set_field_if_absent(self, path: str, field: str, value: Any) -> bool:
		...

	async def delete(self, path: str) -> None:
		...

	async def list(self, collection: str) -> Snapshot:
		...

	async def subscribe(self, collection: str, listener: Listener) -> Callable[[], None]:
		...


class _ListenerRegistry:
	def __init__(self) -> None:
		self._listeners: Dict[str, List[Listener]] = {}

	def add(self, collection: str, listener: Listener) -> Callable[[], None]:
		listeners = self._listeners.setdefault(collection, [])
		listeners.append(listener)

		def _unsubscribe() -> None:
			current = self._listeners.get(collection, [])
			if listener in current:
				current.remove(listener)
			if not current:
				self._listeners.pop(collection, None)

		return _unsubscribe

	def watching(self, collection: str) -> bool:
		return bool(self._listeners.get(collection))

	async def publish(self, collection: str, snapshot: Snapshot) -> None:
		for listener in list(self._listeners.get(collection, [])):
			try:
				await listener(copy.deepcopy(snapshot))
			except Exception:
				logger.warning("feed listener failed", exc_info=True, extra={"collection": collection})


class InMemoryDocumentStore:
	"""Process-local store used in tests and local development."""

	def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
		self._lock = asyncio.Lock()
		self._clock = _MonotonicClock(clock)
		self._collections: Dict[str, Dict[str, Document]] = {}
		self._listeners = _ListenerRegistry()

	def _snapshot_locked(self, collection: str) -> Snapshot:
		docs = self._collections.get(collection, {})
		items = [(doc_id, copy.deepcopy(data)) for doc_id, data in docs.items()]
		items.sort(key=_sort_key)
		return items

	async def _publish(self, collection: str) -> None:
		if not self._listeners.watching(collection):
			return
		async with self._lock:
			snapshot = self._snapshot_locked(collection)
		await self._listeners.publish(collection, snapshot)

	async def add(self, collection: str, data: Document) -> str:
		collection = _check_collection(collection)
		doc_id = str(ulid.new())
		async with self._lock:
			resolved = _resolve_sentinels(copy.deepcopy(data), self._clock())
			self._collections.setdefault(collection, {})[doc_id] = resolved
		await self._publish(collection)
		return doc_id

	async def set(self, path: str, data: Document) -> None:
		collection, doc_id = split_path(path)
		async with self._lock:
			resolved = _resolve_sentinels(copy.deepcopy(data), self._clock())
			self._collections.setdefault(collection, {})[doc_id] = resolved
		await self._publish(collection)

	async def get(self, path: str) -> Optional[Document]:
		collection, doc_id = split_path(path)
		async with self._lock:
			data = self._collections.get(collection, {}).get(doc_id)
			return copy.deepcopy(data) if data is not None else None

	async def update(self, path: str, fields: Document) -> None:
		collection, doc_id = split_path(path)
		async with self._lock:
			data = self._collections.get(collection, {}).get(doc_id)
			if data is None:
				raise DocumentNotFound(path)
			data.update(_resolve_sentinels(copy.deepcopy(fields), self._clock()))
		await self._publish(collection)

	async def set_field_if_absent(self, path: str, field: str, value: Any) -> bool:
		collection, doc_id = split_path(path)
		async with self._lock:
			data = self._collections.get(collection, {}).get(doc_id)
			if data is None:
				raise DocumentNotFound(path)
			if data.get(field) is not None:
				return False
			data[field] = _resolve_sentinels(copy.deepcopy(value), self._clock())
		await self._publish(collection)
		return True

	async def delete(self, path: str) -> None:
		collection, doc_id = split_path(path)
		async with self._lock:
			removed = self._collections.get(collection, {}).pop(doc_id, None)
		if removed is not None:
			await self._publish(collection)

	async def list(self, collection: str) -> Snapshot:
		collection = _check_collection(collection)
		async with self._lock:
			return self._snapshot_locked(collection)

	async def subscribe(self, collection: str, listener: Listener) -> Callable[[], None]:
		collection = _check_collection(collection)
		unsubscribe = self._listeners.add(collection, listener)
		async with self._lock:
			snapshot = self._snapshot_locked(collection)
		await listener(snapshot)
		return unsubscribe


_MARKER_FIELD = "__doc__"


def _encode_default(value: Any) -> Any:
	if isinstance(value, datetime):
		return {"$dt": value.isoformat()}
	raise TypeError(f"unserialisable value: {type(value).__name__}")


def _decode_hook(obj: Dict[str, Any]) -> Any:
	if len(obj) == 1 and "$dt" in obj:
		return datetime.fromisoformat(obj["$dt"])
	return obj


def _encode_fields(data: Document) -> Dict[str, str]:
	return {key: json.dumps(value, default=_encode_default) for key, value in data.items()}


def _decode_fields(raw: Dict[str, str]) -> Document:
	return {
		key: json.loads(value, object_hook=_decode_hook)
		for key, value in raw.items()
		if key != _MARKER_FIELD
	}


class RedisDocumentStore:
	"""Store backed by Redis hashes with a sorted-set index per collection.

	The client must be created with ``decode_responses=True``. Subscriptions
	are process-local: only writes made through this instance are pushed.
	"""

	def __init__(
		self,
		client: redis.Redis,
		*,
		prefix: str = "roomchat",
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self._client = client
		self._prefix = prefix
		self._clock = _MonotonicClock(clock)
		self._listeners = _ListenerRegistry()

	def _doc_key(self, path: str) -> str:
		return f"{self._prefix}:doc:{path.strip('/')}"

	def _index_key(self, collection: str) -> str:
		return f"{self._prefix}:col:{collection}"

	def _seq_key(self) -> str:
		return f"{self._prefix}:seq"

	async def _publish(self, collection: str) -> None:
		if not self._listeners.watching(collection):
			return
		snapshot = await self.list(collection)
		await self._listeners.publish(collection, snapshot)

	async def _write(self, collection: str, doc_id: str, data: Document, *, replace: bool) -> None:
		resolved = _resolve_sentinels(data, self._clock())
		mapping = _encode_fields(resolved)
		mapping[_MARKER_FIELD] = "1"
		seq = await self._client.incr(self._seq_key())
		key = self._doc_key(f"{collection}/{doc_id}")
		async with self._client.pipeline(transaction=True) as pipe:
			if replace:
				pipe.delete(key)
			pipe.hset(key, mapping=mapping)
			pipe.zadd(self._index_key(collection), {doc_id: seq}, nx=True)
			await pipe.execute()

	async def add(self, collection: str, data: Document) -> str:
		collection = _check_collection(collection)
		doc_id = str(ulid.new())
		await self._write(collection, doc_id, data, replace=False)
		await self._publish(collection)
		return doc_id

	async def set(self, path: str, data: Document) -> None:
		collection, doc_id = split_path(path)
		await self._write(collection, doc_id, data, replace=True)
		await self._publish(collection)

	async def get(self, path: str) -> Optional[Document]:
		split_path(path)
		raw = await self._client.hgetall(self._doc_key(path))
		if not raw:
			return None
		return _decode_fields(raw)

	async def _guarded(self, path: str, apply: Callable[[Any], None]) -> list:
		"""Run ``apply`` in a MULTI block only while the document exists."""
		key = self._doc_key(path)
		while True:
			async with self._client.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(key)
					if not await pipe.exists(key):
						raise DocumentNotFound(path)
					pipe.multi()
					apply(pipe)
					return await pipe.execute()
				except redis.WatchError:
					continue

	async def update(self, path: str, fields: Document) -> None:
		collection, _ = split_path(path)
		mapping = _encode_fields(_resolve_sentinels(fields, self._clock()))
		if not mapping:
			return
		key = self._doc_key(path)
		await self._guarded(path, lambda pipe: pipe.hset(key, mapping=mapping))
		await self._publish(collection)

	async def set_field_if_absent(self, path: str, field: str, value: Any) -> bool:
		"""Write ``field`` unless it already holds a non-null value."""
		collection, _ = split_path(path)
		encoded = json.dumps(_resolve_sentinels(value, self._clock()), default=_encode_default)
		key = self._doc_key(path)
		while True:
			async with self._client.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(key)
					if not await pipe.exists(key):
						raise DocumentNotFound(path)
					current = await pipe.hget(key, field)
					if current is not None and json.loads(current) is not None:
						return False
					pipe.multi()
					pipe.hset(key, field, encoded)
					await pipe.execute()
					break
				except redis.WatchError:
					continue
		await self._publish(collection)
		return True

	async def delete(self, path: str) -> None:
		collection, doc_id = split_path(path)
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.delete(self._doc_key(path))
			pipe.zrem(self._index_key(collection), doc_id)
			removed, _ = await pipe.execute()
		if removed:
			await self._publish(collection)

	async def list(self, collection: str) -> Snapshot:
		collection = _check_collection(collection)
		doc_ids = await self._client.zrange(self._index_key(collection), 0, -1)
		if not doc_ids:
			return []
		async with self._client.pipeline(transaction=False) as pipe:
			for doc_id in doc_ids:
				pipe.hgetall(self._doc_key(f"{collection}/{doc_id}"))
			rows = await pipe.execute()
		items = [(doc_id, _decode_fields(raw)) for doc_id, raw in zip(doc_ids, rows) if raw]
		items.sort(key=_sort_key)
		return items

	async def subscribe(self, collection: str, listener: Listener) -> Callable[[], None]:
		collection = _check_collection(collection)
		unsubscribe = self._listeners.add(collection, listener)
		await listener(await self.list(collection))
		return unsubscribe
