"""Text translation collaborator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx

from roomchat.domain.chat.exceptions import ExternalServiceFailure


class Translator(Protocol):
	"""Interface for text translation lookups."""

	async def translate(self, text: str, target: str) -> str:
		...


@dataclass
class GoogleTranslateClient(Translator):
	"""Client for the Google Cloud Translation v2 REST endpoint."""

	http: httpx.AsyncClient
	api_key: str
	endpoint: str = "https://translation.googleapis.com/language/translate/v2"
	request_timeout: float = 10.0

	async def translate(self, text: str, target: str) -> str:
		try:
			response = await self.http.post(
				self.endpoint,
				params={"key": self.api_key},
				json={"q": text, "target": target},
				timeout=self.request_timeout,
			)
			response.raise_for_status()
			data = response.json()
		except (httpx.HTTPError, ValueError) as exc:
			raise ExternalServiceFailure("translation_request_failed") from exc
		try:
			translated = data["data"]["translations"][0]["translatedText"]
		except (KeyError, IndexError, TypeError) as exc:
			raise ExternalServiceFailure("malformed_response") from exc
		if not isinstance(translated, str):
			raise ExternalServiceFailure("malformed_response")
		return translated
