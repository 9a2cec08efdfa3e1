"""SQLModel models for Cabinet."""

from cabinet.models.shares import ShareLink, ShareLinkBase, new_share_token
from cabinet.models.trash import TrashRecord
from cabinet.models.uploads import UploadSession, UploadSessionBase

__all__ = [
    "ShareLink",
    "ShareLinkBase",
    "TrashRecord",
    "UploadSession",
    "UploadSessionBase",
    "new_share_token",
]
