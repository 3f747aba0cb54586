"""
Artifact history for clip2gif.

Keeps the most recent GIFs (newest first, at most five) and owns their
display handles. A display handle is a file exported from the artifact
payload; it must be revoked explicitly, the garbage collector never
removes it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from clip2gif.models import Artifact

logger = logging.getLogger(__name__)

HISTORY_CAPACITY = 5


@dataclass(eq=False)
class DisplayHandle:
    """Exported copy of an artifact payload, addressable by URL."""

    id: str
    path: Path
    revoked: bool = field(default=False)

    @property
    def url(self) -> str:
        return self.path.as_uri()


class HandleStore:
    """Creates and revokes display handles under one directory."""

    def __init__(self, root: Path):
        self.root = root
        self.created = 0
        self.revoked = 0
        self._live: Dict[str, DisplayHandle] = {}

    def create(self, payload: bytes, suffix: str = ".gif") -> DisplayHandle:
        self.root.mkdir(parents=True, exist_ok=True)
        handle_id = uuid.uuid4().hex
        path = (self.root / f"{handle_id}{suffix}").resolve()
        path.write_bytes(payload)
        handle = DisplayHandle(id=handle_id, path=path)
        self._live[handle_id] = handle
        self.created += 1
        return handle

    def revoke(self, handle: DisplayHandle) -> bool:
        """Release a handle. Returns False if it was already revoked."""
        if handle.revoked:
            return False
        try:
            handle.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove display handle %s: %s", handle.path, e)
        handle.revoked = True
        self._live.pop(handle.id, None)
        self.revoked += 1
        return True

    @property
    def live(self) -> List[DisplayHandle]:
        return list(self._live.values())


class ArtifactHistory:
    """Bounded, most-recent-first store of artifacts plus the current artifact."""

    def __init__(self, handles: HandleStore, capacity: int = HISTORY_CAPACITY):
        if capacity < 1:
            raise ValueError("history capacity must be at least 1")
        self.handles = handles
        self.capacity = capacity
        self._entries: List[Artifact] = []
        self._current: Optional[Artifact] = None

    @property
    def entries(self) -> Tuple[Artifact, ...]:
        return tuple(self._entries)

    @property
    def current(self) -> Optional[Artifact]:
        return self._current

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Artifact]:
        return iter(list(self._entries))

    def __contains__(self, artifact: object) -> bool:
        return any(entry is artifact for entry in self._entries)

    def insert(self, artifact: Artifact) -> List[Artifact]:
        """Prepend an artifact; returns the entries evicted from the tail."""
        self._entries.insert(0, artifact)
        evicted: List[Artifact] = []
        while len(self._entries) > self.capacity:
            oldest = self._entries.pop()
            evicted.append(oldest)
            logger.debug("History full, evicting artifact %s", oldest.id)
            self._release(oldest)
        return evicted

    def set_current(self, artifact: Optional[Artifact]) -> None:
        """Replace the displayed artifact, releasing the previous one unless history keeps it."""
        previous = self._current
        self._current = artifact
        if previous is not None and previous is not artifact:
            self._release(previous)

    def clear(self) -> None:
        """Release every handle. Used at teardown."""
        artifacts = list(self._entries)
        if self._current is not None and self._current not in self:
            artifacts.append(self._current)
        self._entries = []
        self._current = None
        for artifact in artifacts:
            if artifact.handle is not None:
                self.handles.revoke(artifact.handle)

    evict_all = clear

    def total_size(self) -> int:
        return sum(a.size for a in self._entries)

    def _release(self, artifact: Artifact) -> None:
        # Still displayed or still listed: whoever drops it last releases it
        if artifact is self._current or artifact in self:
            return
        if artifact.handle is not None:
            self.handles.revoke(artifact.handle)
