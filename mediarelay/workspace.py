"""Per-job temporary directories."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import StorageError

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Allocates and removes job workspaces under a single root.

    Jobs are isolated by directory name only. The manager keeps a registry of
    the workspaces it handed out so shutdown can release exactly those,
    while ``sweep`` handles directories left behind by a crashed process.
    """

    def __init__(self, root: str | os.PathLike, prefixes: Iterable[str] = ()):
        self.root = Path(root)
        self.prefixes = tuple(prefixes)
        self._active: Dict[str, Path] = {}

    def allocate(self, job_id: str) -> Path:
        path = self.root / job_id
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.mkdir()
        except FileExistsError as exc:
            raise StorageError(f"workspace already exists path={path}") from exc
        except OSError as exc:
            raise StorageError(f"cannot create workspace path={path} error={exc}") from exc
        self._active[job_id] = path
        logger.debug("Allocated workspace job_id=%s path=%s", job_id, path)
        return path

    def release(self, path: Optional[str | os.PathLike]) -> bool:
        """Remove ``path`` recursively. Returns False if it was already gone.

        Never raises: a failed removal is logged and left for the next sweep.
        """
        if path is None:
            return False
        path = Path(path)
        self._active.pop(path.name, None)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("Failed to remove workspace path=%s", path)
            return False
        logger.debug("Released workspace path=%s", path)
        return True

    def active(self) -> List[Path]:
        return list(self._active.values())

    def release_all(self) -> int:
        removed = 0
        for path in self.active():
            if self.release(path):
                removed += 1
        return removed

    def sweep(self) -> int:
        """Remove stale job directories from a previous run."""
        if not self.prefixes:
            return 0
        try:
            entries = list(os.scandir(self.root))
        except FileNotFoundError:
            return 0
        except OSError:
            logger.exception("Cannot scan workspace root root=%s", self.root)
            return 0

        removed = 0
        for entry in entries:
            if entry.name in self._active or not entry.name.startswith(self.prefixes):
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                continue
            if is_dir and self.release(entry.path):
                removed += 1
        if removed:
            logger.info("Swept stale workspaces root=%s count=%d", self.root, removed)
        return removed
