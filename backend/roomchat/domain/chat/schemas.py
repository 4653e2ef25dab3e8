"""Pydantic view models handed to the presentation layer."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class AttachmentView(BaseModel):
    kind: str
    blob_key: str
    state: str
    url: Optional[str] = None
    uploading: bool = False
    failed: bool = False


class DiffTokenView(BaseModel):
    token: str
    changed: bool


class MessageView(BaseModel):
    id: str
    room_id: str
    author_id: str
    author_name: Optional[str] = None
    text: str
    display_time: str
    created_at: Optional[datetime] = None
    attachment: Optional[AttachmentView] = None
    edited: bool = False
    overlay: List[DiffTokenView] = Field(default_factory=list)
    corrected_text: Optional[str] = None
    translation: Optional[str] = None
    transcript: Optional[str] = None
