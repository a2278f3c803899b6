"""
Per-execution workspace directories.

Each execution gets a fresh, empty directory named after the job owner,
the current time and a random suffix, so concurrent runs of the same
job never share a directory. Removal is best-effort: a leaked directory
is logged, never raised.
"""

import logging
import tempfile
import shutil
import time
import uuid
from pathlib import Path
from typing import Optional, Union

from jobrunner.exceptions import WorkspaceAcquireFailed

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """
    Creates and destroys isolated temporary directories.

    Usage:
        manager = WorkspaceManager('/tmp')
        path = manager.acquire(owner=7)
        ...
        manager.release(path)
    """

    def __init__(self, root: Optional[Union[str, Path]] = None, prefix: str = "user"):
        """
        Args:
            root: Parent directory for workspaces (default: system temp dir)
            prefix: Directory name prefix
        """
        self.root = Path(root) if root else Path(tempfile.gettempdir())
        self.prefix = prefix

    def _make_name(self, owner) -> str:
        timestamp_ms = int(time.time() * 1000)
        suffix = uuid.uuid4().hex[:12]
        return f"{self.prefix}_{owner}_{timestamp_ms}_{suffix}"

    def acquire(self, owner) -> Path:
        """
        Create a new empty workspace for owner.

        Returns:
            Path to the created directory

        Raises:
            WorkspaceAcquireFailed: If the directory cannot be created
        """
        path = self.root / self._make_name(owner)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.mkdir(mode=0o700)
        except OSError as e:
            raise WorkspaceAcquireFailed(f"Failed to create workspace {path}: {e}") from e

        logger.debug(f"Created workspace {path}")
        return path

    def release(self, path: Optional[Union[str, Path]]) -> bool:
        """
        Recursively delete a workspace.

        Returns:
            True if the directory is gone afterwards
        """
        if not path:
            return True

        path = Path(path)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning(f"Failed to clean up workspace {path}: {e}")
            return False

        logger.debug(f"Cleaned up workspace {path}")
        return True
