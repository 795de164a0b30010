"""
Transfer Layer.

Moves torrent content to the rclone remote and tidies up the local copy afterwards.
"""

from .file_manager import LocalFileManager
from .rclone import RcloneUploader, UploadResult, VerificationResult

__all__ = ["LocalFileManager", "RcloneUploader", "UploadResult", "VerificationResult"]
