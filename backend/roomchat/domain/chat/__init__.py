"""Chat domain exports."""

from .attachments import AttachmentPipeline
from .overlay import diff
from .service import MessageStore

__all__ = ["AttachmentPipeline", "MessageStore", "diff"]
