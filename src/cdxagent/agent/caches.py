"""Cache invalidation registry."""

from __future__ import annotations

import inspect
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path

from cdxagent.common.logging import get_logger

logger = get_logger(__name__)

CacheClearer = Callable[[], Awaitable[None] | None]


def directory_clearer(path: str | Path) -> CacheClearer:
    """Clearer that empties ``path`` but keeps the directory itself."""
    root = Path(path)

    def clear() -> None:
        if not root.is_dir():
            return
        for child in root.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()

    return clear


class CacheRegistry:
    """Named cache clearers run by ``/clear-caches``."""

    def __init__(self) -> None:
        self._clearers: dict[str, CacheClearer] = {}

    def register(self, name: str, clearer: CacheClearer) -> None:
        self._clearers[name] = clearer

    def names(self) -> list[str]:
        return list(self._clearers)

    async def clear_all(self) -> dict[str, str]:
        """Run every clearer; one failure does not stop the others."""
        results: dict[str, str] = {}
        for name, clearer in self._clearers.items():
            try:
                outcome = clearer()
                if inspect.isawaitable(outcome):
                    await outcome
                results[name] = "cleared"
            except Exception as exc:
                logger.warning("Cache clear failed", cache=name, error=str(exc))
                results[name] = f"error: {exc}"
        return results

    @classmethod
    def from_paths(cls, paths: tuple[str, ...] | list[str]) -> CacheRegistry:
        registry = cls()
        for path in paths:
            registry.register(Path(path).name or path, directory_clearer(path))
        return registry
