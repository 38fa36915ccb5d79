"""Per-run scratch directories for cloned repositories."""

from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "repolens-"


@dataclass(frozen=True)
class WorkspaceHandle:
    """A uniquely named directory owned by exactly one analysis run."""

    path: Path

    @property
    def repo_dir(self) -> Path:
        """Where the fetcher places the cloned tree."""
        return self.path / "repo"


class WorkspaceManager:
    """Allocates and releases workspaces under a common root."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root else Path(tempfile.gettempdir())

    def acquire(self) -> WorkspaceHandle:
        self.root.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=self.root))
        logger.debug(f"Acquired workspace {path}")
        return WorkspaceHandle(path=path)

    def release(self, handle: WorkspaceHandle) -> None:
        """Remove the workspace tree. Failures are logged, never raised."""
        try:
            shutil.rmtree(handle.path)
            logger.debug(f"Released workspace {handle.path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clean up workspace {handle.path}: {e}")

    @contextmanager
    def workspace(self) -> Iterator[WorkspaceHandle]:
        """Acquire a workspace and release it on every exit path."""
        handle = self.acquire()
        try:
            yield handle
        finally:
            self.release(handle)
