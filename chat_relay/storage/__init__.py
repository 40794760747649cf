from .filesystem import FilesystemAttachmentStore, FilesystemTurnStore
from .memory import MemoryAttachmentStore, MemoryTurnStore

__all__ = [
    "FilesystemAttachmentStore",
    "FilesystemTurnStore",
    "MemoryAttachmentStore",
    "MemoryTurnStore",
]
