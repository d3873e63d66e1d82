"""In-memory view cache with per-view-type TTLs and selective invalidation."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from storylink import config

logger = logging.getLogger("storylink.cache")

VIEW_HIERARCHY = "story-hierarchy"
VIEW_VALIDATION = "story-validation"
VIEW_DASHBOARD = "dashboard-stats"
VIEW_WITH_STORIES = "with-stories"


def default_ttls() -> dict[str, float]:
    return {
        VIEW_HIERARCHY: config.CACHE_TTL_SECONDS,
        VIEW_VALIDATION: config.VALIDATION_CACHE_TTL_SECONDS,
        VIEW_DASHBOARD: config.CACHE_TTL_SECONDS,
        VIEW_WITH_STORIES: config.CACHE_TTL_SECONDS,
    }


def make_cache_key(view_type: str, project_id: str, qualifier: str | None = None) -> str:
    key = f"{view_type}-{project_id}"
    if qualifier:
        key = f"{key}-{qualifier}"
    return key


@dataclass
class CacheEntry:
    key: str
    view_type: str
    project_ref: str
    data: Any
    timestamp: float


class CacheManager:
    """Keyed store of computed views.

    Expiry is lazy: an entry older than its view type's TTL is dropped the
    next time it is read. Nothing sweeps in the background.
    """

    def __init__(
        self,
        ttls: Optional[dict[str, float]] = None,
        default_ttl: float = config.CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttls = dict(default_ttls() if ttls is None else ttls)
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._epoch = 0
        self._generations: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def ttl_for(self, view_type: str) -> float:
        return self.ttls.get(view_type, self.default_ttl)

    def _split_key(self, key: str) -> tuple[str, str]:
        """Return (view_type, remainder) using the longest registered view-type prefix."""
        best = ""
        for view_type in self.ttls:
            if len(view_type) > len(best) and key.startswith(f"{view_type}-"):
                best = view_type
        if best:
            return best, key[len(best) + 1:]
        view_type, _, remainder = key.partition("-")
        return view_type, remainder

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl_for(entry.view_type)

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self.clock()):
            del self._entries[key]
            logger.debug("Cache entry expired: %s", key)
            return None
        return entry.data

    def set(self, key: str, data: Any) -> None:
        view_type, remainder = self._split_key(key)
        self._entries[key] = CacheEntry(
            key=key,
            view_type=view_type,
            project_ref=remainder,
            data=data,
            timestamp=self.clock(),
        )

    @staticmethod
    def _matches_project(entry: CacheEntry, project_id: str) -> bool:
        return entry.project_ref == project_id or entry.project_ref.startswith(f"{project_id}-")

    def generation(self, project_id: str) -> tuple[int, int]:
        """Token that changes whenever entries for ``project_id`` may have been cleared.

        A view computed across an await should only be stored if the token
        read before computing still matches, otherwise it may predate a clear.
        """
        project_generation = sum(
            count for pid, count in self._generations.items()
            if project_id == pid or project_id.startswith(f"{pid}-")
        )
        return self._epoch, project_generation

    def set_if_current(self, key: str, data: Any, generation: tuple[int, int], project_id: str) -> bool:
        if self.generation(project_id) != generation:
            logger.debug("Discarding stale view for %s: cache cleared during build", key)
            return False
        self.set(key, data)
        return True

    def clear(self, project_id: str | None = None, view_type: str | None = None) -> dict[str, Any]:
        """Remove entries matching the project and/or view type.

        With both filters an entry must match both. With neither, everything
        goes.
        """
        if project_id:
            self._generations[project_id] = self._generations.get(project_id, 0) + 1
        else:
            self._epoch += 1
        removed: list[CacheEntry] = []
        for key, entry in list(self._entries.items()):
            if project_id and not self._matches_project(entry, project_id):
                continue
            if view_type and entry.view_type != view_type:
                continue
            removed.append(entry)
            del self._entries[key]

        types = sorted({entry.view_type for entry in removed})
        if removed:
            logger.info(
                "Cleared %d cache entries (project=%s, type=%s)",
                len(removed), project_id or "*", view_type or "*",
            )
        return {"count": len(removed), "types": types}

    def clear_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._epoch += 1
        if count:
            logger.info("Cleared all %d cache entries", count)
        return count

    def status(self) -> dict[str, Any]:
        now = self.clock()
        by_type: dict[str, int] = {}
        by_project: dict[str, int] = {}
        fresh = 0
        expired = 0
        oldest: CacheEntry | None = None
        newest: CacheEntry | None = None

        for entry in self._entries.values():
            by_type[entry.view_type] = by_type.get(entry.view_type, 0) + 1
            project_key = entry.project_ref or "global"
            by_project[project_key] = by_project.get(project_key, 0) + 1
            if self._is_expired(entry, now):
                expired += 1
            else:
                fresh += 1
            if oldest is None or entry.timestamp < oldest.timestamp:
                oldest = entry
            if newest is None or entry.timestamp > newest.timestamp:
                newest = entry

        def _describe(entry: CacheEntry | None) -> dict[str, Any] | None:
            if entry is None:
                return None
            return {
                "key": entry.key,
                "timestamp": entry.timestamp,
                "age": round(now - entry.timestamp, 3),
                "expired": self._is_expired(entry, now),
            }

        total = len(self._entries)
        return {
            "totalEntries": total,
            "ttl": self.default_ttl,
            "ttls": dict(self.ttls),
            "fresh": fresh,
            "expired": expired,
            "byType": by_type,
            "byProject": by_project,
            "oldestEntry": _describe(oldest),
            "newestEntry": _describe(newest),
            "efficiency": {
                "freshPercentage": round(fresh / total * 100) if total else 0,
                "expiredPercentage": round(expired / total * 100) if total else 0,
            },
        }
