from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from .models import ArtifactVersion


class VersionStore:
    """Ordered artifact versions plus a cursor marking the current one.

    The cursor lives in ``[-1, len - 1]``; ``-1`` means nothing has been
    generated yet. Moving the cursor never touches the list. Only ``commit``
    drops versions, and only those after the cursor.
    """

    def __init__(self) -> None:
        self._versions: list[ArtifactVersion] = []
        self._cursor = -1

    @classmethod
    def restore(cls, versions: Iterable[ArtifactVersion], cursor: int | None = None) -> VersionStore:
        store = cls()
        store._versions = [
            ArtifactVersion(
                index=idx,
                content=version.content,
                instruction=version.instruction,
                created_at=version.created_at,
                record_id=version.record_id,
            )
            for idx, version in enumerate(versions)
        ]
        store._cursor = len(store._versions) - 1
        if cursor is not None:
            store.select_cursor(cursor)
        return store

    def __len__(self) -> int:
        return len(self._versions)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def versions(self) -> tuple[ArtifactVersion, ...]:
        return tuple(self._versions)

    def commit(
        self,
        content: str,
        instruction: str = "",
        record_id: int | None = None,
        parent: int | None = None,
    ) -> ArtifactVersion:
        """Append a version on top of ``parent`` (the cursor by default), dropping anything after it."""
        if parent is None:
            parent = self._cursor
        elif parent < -1 or parent > len(self._versions) - 1:
            raise IndexError(f"Version index {parent} out of range [-1, {len(self._versions) - 1}]")
        # Build the new list first so the store is never seen half-updated.
        kept = self._versions[: parent + 1]
        version = ArtifactVersion(
            index=len(kept),
            content=content,
            instruction=instruction,
            created_at=datetime.now(timezone.utc),
            record_id=record_id,
        )
        kept.append(version)
        self._versions = kept
        self._cursor = version.index
        return version

    def attach_record_id(self, index: int, record_id: int) -> None:
        version = self._versions[index]
        self._versions[index] = ArtifactVersion(
            index=version.index,
            content=version.content,
            instruction=version.instruction,
            created_at=version.created_at,
            record_id=record_id,
        )

    def select_cursor(self, index: int) -> None:
        if index < -1 or index > len(self._versions) - 1:
            raise IndexError(f"Version index {index} out of range [-1, {len(self._versions) - 1}]")
        self._cursor = index

    def current(self) -> str | None:
        if self._cursor == -1:
            return None
        return self._versions[self._cursor].content

    def current_version(self) -> ArtifactVersion | None:
        if self._cursor == -1:
            return None
        return self._versions[self._cursor]

    def undo(self) -> bool:
        if self._cursor <= 0:
            return False
        self._cursor -= 1
        return True

    def redo(self) -> bool:
        if self._cursor >= len(self._versions) - 1:
            return False
        self._cursor += 1
        return True
