"""Rooms domain exports."""

from .index import RoomIndex
from .service import RoomLifecycle

__all__ = ["RoomIndex", "RoomLifecycle"]
