"""
Per-scene animation history.

History is append-only, oldest first, and capped at MAX_ANIMATION_HISTORY.
All writes go through AnimationHistory.append so the backfill rule lives in
one place: the first time a new animation is produced for a scene whose
history is empty, the scene's existing current animation is recorded first.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from .models import AnimationHistoryEntry, Scene, MAX_ANIMATION_HISTORY


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def current_entry(scene: Scene) -> Optional[AnimationHistoryEntry]:
    """The scene's current animation as a history entry, if it has one."""
    if not scene.animation_ref:
        return None
    return AnimationHistoryEntry(
        video_ref=scene.animation_ref,
        prompt=scene.animation_prompt or "",
        provider=scene.animation_provider or "",
        source_image_ref=scene.image_ref,
        created_at=scene.updated_at or scene.created_at or _now_iso(),
    )


class AnimationHistory:
    def __init__(self, entries: Iterable[AnimationHistoryEntry] = (), limit: int = MAX_ANIMATION_HISTORY):
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self._limit = limit
        self._entries = list(entries)[-limit:]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    @property
    def entries(self) -> list[AnimationHistoryEntry]:
        return list(self._entries)

    def append(
        self,
        entry: AnimationHistoryEntry,
        current: Optional[AnimationHistoryEntry] = None,
    ) -> list[AnimationHistoryEntry]:
        """
        Record a newly produced animation.

        Args:
            entry:   The animation that is about to become current.
            current: The scene's existing current animation. Only used when
                     the history is still empty, so it is never lost.

        Returns:
            The updated entry list, trimmed to the newest `limit` entries.
        """
        if not self._entries and current is not None and current.video_ref != entry.video_ref:
            self._entries.append(current)
        self._entries.append(entry)
        if len(self._entries) > self._limit:
            del self._entries[: len(self._entries) - self._limit]
        return self.entries


def record_animation(scene: Scene, entry: AnimationHistoryEntry) -> list[AnimationHistoryEntry]:
    """History for `scene` after `entry` becomes its current animation."""
    history = AnimationHistory(scene.animation_history)
    return history.append(entry, current=current_entry(scene))
