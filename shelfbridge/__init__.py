"""
ShelfBridge

Synchronizes audiobook listening progress from Audiobookshelf to reading
progress in Hardcover, matching books by ASIN, ISBN or title and author.
"""

__version__ = "1.0.0"

from .audiobookshelf_client import AudiobookshelfClient
from .cache import ProgressCache
from .config import Config
from .hardcover_client import HardcoverClient
from .main import main
from .session_manager import SessionManager
from .sync_manager import SyncManager

__all__ = [
    "main",
    "Config",
    "SyncManager",
    "SessionManager",
    "ProgressCache",
    "AudiobookshelfClient",
    "HardcoverClient",
]
