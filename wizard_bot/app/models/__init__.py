from .user import User
from .download import Download, DownloadError, DownloadStatus
from .sticker import Sticker
from .inbound_message import InboundMessage

__all__ = [
    "User",
    "Download", "DownloadError", "DownloadStatus",
    "Sticker",
    "InboundMessage",
]
