"""Cabinet: a multi-user file manager storage core.

Confined browsing, editing, trash, chunked uploads, share links, and
streamed archives over local disk or an S3-compatible bucket.
"""

__version__ = "0.1.0"

from cabinet._cabinet import Cabinet
from cabinet.config import Settings, create_backend
from cabinet.db import Database
from cabinet.events import AuditEvent, EventBus
from cabinet.fs.permissions import Role
from cabinet.fs.sharing import ShareRegistry
from cabinet.fs.trash import TrashService
from cabinet.fs.types import UserContext
from cabinet.fs.uploads import UploadCoordinator
from cabinet.models import ShareLink, TrashRecord, UploadSession

__all__ = [
    "AuditEvent",
    "Cabinet",
    "Database",
    "EventBus",
    "Role",
    "Settings",
    "ShareLink",
    "ShareRegistry",
    "TrashRecord",
    "TrashService",
    "UploadCoordinator",
    "UploadSession",
    "UserContext",
    "__version__",
    "create_backend",
]
