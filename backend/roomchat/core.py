"""Explicit wiring of store handles, credentials and the core components."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import httpx
import redis.asyncio as redis

from roomchat.domain.chat.attachments import AttachmentPipeline
from roomchat.domain.chat.service import MessageStore
from roomchat.domain.rooms.index import RoomIndex
from roomchat.domain.rooms.service import RoomLifecycle
from roomchat.infra.blobs import BlobStore, InMemoryBlobStore, LocalBlobStore
from roomchat.infra.documents import DocumentStore, InMemoryDocumentStore, RedisDocumentStore
from roomchat.infra.speech import GoogleSpeechClient, Transcriber
from roomchat.infra.translation import GoogleTranslateClient, Translator
from roomchat.settings import Settings


@dataclass
class CoreConfig:
	"""Everything the core needs, handed in at construction time."""

	documents: DocumentStore
	blobs: BlobStore
	settings: Settings = field(default_factory=Settings)
	translator: Optional[Translator] = None
	transcriber: Optional[Transcriber] = None
	http: Optional[httpx.AsyncClient] = None

	@classmethod
	def from_settings(cls, settings: Settings, *, http: Optional[httpx.AsyncClient] = None) -> "CoreConfig":
		http = http or httpx.AsyncClient(timeout=settings.external_timeout_seconds)
		if settings.document_backend == "redis":
			documents: DocumentStore = RedisDocumentStore(
				redis.from_url(settings.redis_url, decode_responses=True),
			)
		elif settings.document_backend == "memory":
			documents = InMemoryDocumentStore()
		else:
			raise ValueError(f"unknown document backend: {settings.document_backend!r}")
		if settings.blob_backend == "local":
			blobs: BlobStore = LocalBlobStore(settings.blob_root, base_url=settings.blob_base_url)
		elif settings.blob_backend == "memory":
			blobs = InMemoryBlobStore(base_url=settings.blob_base_url)
		else:
			raise ValueError(f"unknown blob backend: {settings.blob_backend!r}")
		translator: Optional[Translator] = None
		if settings.translation_api_key:
			translator = GoogleTranslateClient(
				http=http,
				api_key=settings.translation_api_key,
				endpoint=settings.translation_endpoint,
				request_timeout=settings.external_timeout_seconds,
			)
		transcriber: Optional[Transcriber] = None
		if settings.speech_api_key:
			transcriber = GoogleSpeechClient(
				http=http,
				api_key=settings.speech_api_key,
				endpoint=settings.speech_endpoint,
				request_timeout=settings.external_timeout_seconds,
			)
		return cls(
			documents=documents,
			blobs=blobs,
			settings=settings,
			translator=translator,
			transcriber=transcriber,
			http=http,
		)


@dataclass
class ChatCore:
	config: CoreConfig
	pipeline: AttachmentPipeline
	index: RoomIndex
	messages: MessageStore
	rooms: RoomLifecycle

	async def aclose(self) -> None:
		"""Let in-flight uploads settle, then release the HTTP client."""
		await self.messages.wait_for_uploads()
		if self.config.http is not None:
			await self.config.http.aclose()


def build_core(config: CoreConfig) -> ChatCore:
	pipeline = AttachmentPipeline.from_settings(config.blobs, config.settings)
	index = RoomIndex(config.documents, avatar_base_url=config.settings.avatar_base_url)
	messages = MessageStore(
		config.documents,
		pipeline,
		index,
		settings=config.settings,
		translator=config.translator,
		transcriber=config.transcriber,
		http=config.http,
	)
	rooms = RoomLifecycle(config.documents, messages, pipeline, index)
	return ChatCore(config=config, pipeline=pipeline, index=index, messages=messages, rooms=rooms)
