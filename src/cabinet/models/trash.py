"""TrashRecord: JSON sidecar describing one trashed item.

Not a table: records live beside the trashed data at
``/.trash/.meta/<id>.json`` inside the owner's root, so they move with the
storage rather than with the database.
"""

from __future__ import annotations

import uuid
from typing import Literal

from sqlmodel import Field, SQLModel

from cabinet.fs.utils import now_ms


class TrashRecord(SQLModel):
    """Immutable description of a trashed file or folder."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    original_path: str
    deleted_at: int = Field(default_factory=now_ms)
    type: Literal["file", "dir"]
    size: int = 0
    trash_name: str

    @property
    def record_name(self) -> str:
        return f"{self.id}.json"

    @property
    def trash_path(self) -> str:
        return f"/.trash/{self.trash_name}"
