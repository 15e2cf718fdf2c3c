"""
Binary file download for snapshots.
"""

from ..source.base import FileKind
from .downloader import BinaryDownloader, DownloadResult, DownloadStats, FileReference

__all__ = [
    "BinaryDownloader",
    "DownloadResult",
    "DownloadStats",
    "FileKind",
    "FileReference",
]
