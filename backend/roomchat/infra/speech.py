"""Speech-to-text collaborator."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from roomchat.domain.chat.exceptions import ExternalServiceFailure


class Transcriber(Protocol):
	"""Interface for audio transcription; ``None`` means no speech was recognised."""

	async def transcribe(
		self,
		audio: bytes,
		*,
		encoding: str,
		sample_rate: int,
		language_code: str,
	) -> Optional[str]:
		...


@dataclass
class GoogleSpeechClient(Transcriber):
	"""Client for the Google Cloud Speech-to-Text v1 ``speech:recognize`` endpoint."""

	http: httpx.AsyncClient
	api_key: str
	endpoint: str = "https://speech.googleapis.com/v1/speech:recognize"
	request_timeout: float = 10.0

	async def transcribe(
		self,
		audio: bytes,
		*,
		encoding: str,
		sample_rate: int,
		language_code: str,
	) -> Optional[str]:
		body = {
			"config": {
				"encoding": encoding,
				"sampleRateHertz": sample_rate,
				"languageCode": language_code,
			},
			"audio": {"content": base64.b64encode(audio).decode("ascii")},
		}
		try:
			response = await self.http.post(
				self.endpoint,
				params={"key": self.api_key},
				json=body,
				timeout=self.request_timeout,
			)
			response.raise_for_status()
			data = response.json()
		except (httpx.HTTPError, ValueError) as exc:
			raise ExternalServiceFailure("speech_request_failed") from exc
		if not isinstance(data, dict):
			raise ExternalServiceFailure("malformed_response")
		results = data.get("results") or []
		try:
			transcripts = [result["alternatives"][0]["transcript"] for result in results]
		except (KeyError, IndexError, TypeError) as exc:
			raise ExternalServiceFailure("malformed_response") from exc
		text = " ".join(part.strip() for part in transcripts if isinstance(part, str) and part.strip())
		return text or None
