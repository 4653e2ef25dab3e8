"""Word-level correction overlay for edited messages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple

from .models import EditRecord


class DiffToken(NamedTuple):
	token: str
	changed: bool


def diff(original: str, corrected: str) -> List[DiffToken]:
	"""Mark each whitespace-separated token of ``original`` that differs positionally.

	Token ``i`` of the original is compared with token ``i`` of the
	correction only; a corrected sequence that is shorter counts as a
	difference. Insertions or deletions shift the alignment, so every
	token after one is reported as changed.
	"""
	original_tokens = original.split()
	corrected_tokens = corrected.split()
	tokens: List[DiffToken] = []
	for index, token in enumerate(original_tokens):
		same = index < len(corrected_tokens) and corrected_tokens[index] == token
		tokens.append(DiffToken(token, not same))
	return tokens


@dataclass(frozen=True, slots=True)
class EditOverlay:
	"""Display form of a correction: struck-through original tokens plus the full corrected text."""

	tokens: Tuple[DiffToken, ...]
	corrected_text: str

	@property
	def changed_tokens(self) -> List[str]:
		return [token.token for token in self.tokens if token.changed]

	@classmethod
	def from_record(cls, record: EditRecord) -> "EditOverlay":
		return cls(
			tokens=tuple(diff(record.original_text, record.corrected_text)),
			corrected_text=record.corrected_text,
		)


def overlay_for(record: Optional[EditRecord]) -> Optional[EditOverlay]:
	if record is None:
		return None
	return EditOverlay.from_record(record)
