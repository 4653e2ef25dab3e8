import asyncio
import sys
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from PIL import Image

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from roomchat.core import CoreConfig, build_core
from roomchat.infra.blobs import InMemoryBlobStore
from roomchat.infra.documents import InMemoryDocumentStore
from roomchat.settings import Settings

AUDIO_BYTES = b"OggS\x00fake-opus-payload"


class RecordingBlobStore(InMemoryBlobStore):
	"""In-memory blob store that records deletes and can gate or fail calls."""

	def __init__(self) -> None:
		super().__init__(base_url="https://blobs.test")
		self.put_calls: list[str] = []
		self.deleted: list[str] = []
		self.fail_put: int = 0
		self.fail_delete: Callable[[str], bool] = lambda key: False
		self.put_gate: Optional[asyncio.Event] = None
		self.on_delete: Optional[Callable[[str], None]] = None

	async def put(self, key: str, data: bytes, *, content_type: str) -> str:
		self.put_calls.append(key)
		if self.put_gate is not None:
			await self.put_gate.wait()
		if self.fail_put:
			self.fail_put -= 1
			raise ConnectionError("blob backend unavailable")
		return await super().put(key, data, content_type=content_type)

	async def delete(self, key: str) -> None:
		self.deleted.append(key)
		if self.on_delete is not None:
			self.on_delete(key)
		if self.fail_delete(key):
			raise ConnectionError(f"cannot delete {key}")
		await super().delete(key)


class RecordingDocumentStore(InMemoryDocumentStore):
	def __init__(self) -> None:
		super().__init__()
		self.deleted: list[str] = []
		self.fail_delete: Callable[[str], bool] = lambda path: False
		self.fail_list: bool = False

	async def delete(self, path: str) -> None:
		self.deleted.append(path)
		if self.fail_delete(path):
			raise ConnectionError(f"cannot delete {path}")
		await super().delete(path)

	async def list(self, collection: str):
		if self.fail_list:
			raise ConnectionError("document backend unavailable")
		return await super().list(collection)


class FakeTranslator:
	def __init__(self) -> None:
		self.calls: list[tuple[str, str]] = []
		self.error: Optional[Exception] = None

	async def translate(self, text: str, target: str) -> str:
		self.calls.append((text, target))
		if self.error is not None:
			raise self.error
		return f"[{target}] {text}"


class FakeTranscriber:
	def __init__(self) -> None:
		self.calls: list[dict] = []
		self.result: Optional[str] = "hello from the voice note"
		self.error: Optional[Exception] = None

	async def transcribe(self, audio: bytes, *, encoding: str, sample_rate: int, language_code: str):
		self.calls.append(
			{"audio": audio, "encoding": encoding, "sample_rate": sample_rate, "language_code": language_code}
		)
		if self.error is not None:
			raise self.error
		return self.result


def _audio_handler(request: httpx.Request) -> httpx.Response:
	if request.url.path.endswith("/missing"):
		return httpx.Response(404)
	return httpx.Response(200, content=AUDIO_BYTES, headers={"content-type": "audio/webm"})


@pytest.fixture
def audio_bytes() -> bytes:
	return AUDIO_BYTES


@pytest.fixture
def test_settings() -> Settings:
	return Settings(
		environment="test",
		upload_attempts=2,
		upload_retry_backoff_seconds=0,
		upload_timeout_seconds=5,
		translation_default_language="es",
		translation_languages=("es", "en"),
		image_max_dimension=64,
		image_quality=70,
	)


@pytest.fixture
def documents() -> RecordingDocumentStore:
	return RecordingDocumentStore()


@pytest.fixture
def blobs() -> RecordingBlobStore:
	return RecordingBlobStore()


@pytest.fixture
def translator() -> FakeTranslator:
	return FakeTranslator()


@pytest.fixture
def transcriber() -> FakeTranscriber:
	return FakeTranscriber()


@pytest_asyncio.fixture
async def http_client():
	async with httpx.AsyncClient(transport=httpx.MockTransport(_audio_handler)) as client:
		yield client


@pytest_asyncio.fixture
async def core(documents, blobs, test_settings, translator, transcriber, http_client):
	config = CoreConfig(
		documents=documents,
		blobs=blobs,
		settings=test_settings,
		translator=translator,
		transcriber=transcriber,
		http=http_client,
	)
	chat_core = build_core(config)
	try:
		yield chat_core
	finally:
		if blobs.put_gate is not None:
			blobs.put_gate.set()
		await chat_core.messages.wait_for_uploads()


@pytest_asyncio.fixture
async def room(core):
	return await core.rooms.create_room("Study Group")


@pytest_asyncio.fixture
async def fake_redis():
	client = FakeRedis(decode_responses=True)
	try:
		yield client
	finally:
		await client.flushall()


@pytest.fixture
def png_bytes() -> Callable[..., bytes]:
	def _make(width: int = 200, height: int = 100, mode: str = "RGB") -> bytes:
		color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
		img = Image.new(mode, (width, height), color)
		buffer = BytesIO()
		img.save(buffer, format="PNG")
		return buffer.getvalue()

	return _make
