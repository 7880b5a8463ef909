"""Device link lifecycle manager: socket session, image upload, reboot handshake."""

from devicelink.config import LinkSettings, get_settings
from devicelink.manager import LinkManager
from devicelink.upload import UploadOutcome, UploadTarget

__all__ = ["LinkSettings", "get_settings", "LinkManager", "UploadOutcome", "UploadTarget"]

__version__ = "0.1.0"
