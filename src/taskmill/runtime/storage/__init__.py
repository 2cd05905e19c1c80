"""File-backed runtime state."""

from .container import Container
from .events import FileEventRepository
from .ledger import FileLedger

__all__ = ["Container", "FileEventRepository", "FileLedger"]
