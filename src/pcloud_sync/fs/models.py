"""Filesystem-level records exposed to the synchronization engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class FileStat:
    """Normalized description of a remote file or directory.

    Attributes:
        path: Logical path, relative to the listed folder.
        is_dir: True for directories.
        is_deleted: Set only for entries the provider reports as deleted.
        created_time: Creation time in Unix milliseconds (omitted for deleted entries).
        updated_time: Modification time in Unix milliseconds (omitted for deleted entries).
        folder_id: Provider folder identifier, when the entry is a folder.
    """

    path: str
    is_dir: bool
    is_deleted: bool | None = None
    created_time: int | None = None
    updated_time: int | None = None
    folder_id: int | None = None


@dataclass
class ListResult:
    """Result of a directory listing. Listings are never paginated."""

    items: list[FileStat] = field(default_factory=list)
    has_more: bool = False


@dataclass
class DeltaResult:
    """Changes since the previous observation plus the context for the next call."""

    items: list[FileStat] = field(default_factory=list)
    has_more: bool = False
    context: dict[str, Any] = field(default_factory=dict)
