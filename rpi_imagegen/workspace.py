"""Per-build scratch directory.

Layout::

    <root>/
        download/   base archive and its digest file
        root/       mount point of the root partition (boot nests under it)
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rpi_imagegen.types import ImagegenError

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "rpi-build."


class WorkspaceError(ImagegenError):
    """Raised when the workspace cannot be created or removed."""

    def __init__(self, message: str, code: str = "workspace_error") -> None:
        super().__init__(message, code=code)


@dataclass
class Workspace:
    """Isolated scratch tree of one build.

    Attributes:
        root: Top-level directory.
        download_dir: Where the base archive is stored.
        mount_dir: Mount point of the root partition.
        auto_remove: True when the directory was allocated by us under the
            default prefix and may be removed after a successful build.
    """

    root: Path
    download_dir: Path
    mount_dir: Path
    auto_remove: bool = False

    @property
    def boot_dir(self) -> Path:
        return self.mount_dir / "boot"


def create_workspace(workdir: Path | None = None, base_dir: Path | None = None) -> Workspace:
    """Create the scratch tree.

    Args:
        workdir: Explicit directory to use (created if missing). Such a
            directory is never removed automatically.
        base_dir: Parent of auto-allocated workspaces (CWD by default).

    Returns:
        Workspace with its subdirectories created.

    Raises:
        WorkspaceError: If the directories cannot be created.
    """
    try:
        if workdir is None:
            parent = base_dir or Path.cwd()
            root = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=parent))
            auto_remove = True
        else:
            root = workdir.resolve()
            root.mkdir(parents=True, exist_ok=True)
            auto_remove = False

        download_dir = root / "download"
        mount_dir = root / "root"
        download_dir.mkdir(exist_ok=True)
        mount_dir.mkdir(exist_ok=True)
    except OSError as e:
        raise WorkspaceError(f"Cannot create workspace: {e}") from e

    logger.info("Workspace: %s", root)
    return Workspace(
        root=root,
        download_dir=download_dir,
        mount_dir=mount_dir,
        auto_remove=auto_remove,
    )


def open_workspace(root: Path) -> Workspace:
    """Describe an existing workspace, e.g. one left behind by --no-cleanup."""
    root = root.resolve()
    if not root.is_dir():
        raise WorkspaceError(f"Workspace not found: {root}", code="not_found")
    return Workspace(
        root=root,
        download_dir=root / "download",
        mount_dir=root / "root",
        auto_remove=False,
    )


def is_removable(workspace: Workspace, base_dir: Path | None = None) -> bool:
    """Check the removal guard: auto-allocated and named <base>/rpi-build.*."""
    parent = (base_dir or Path.cwd()).resolve()
    return (
        workspace.auto_remove
        and workspace.root.resolve().parent == parent
        and workspace.root.name.startswith(WORKSPACE_PREFIX)
    )


def remove_workspace(workspace: Workspace, base_dir: Path | None = None) -> bool:
    """Delete the workspace if the removal guard allows it.

    Must only be called once nothing is mounted under it.

    Returns:
        True if the directory was removed.

    Raises:
        WorkspaceError: If removal fails.
    """
    if not is_removable(workspace, base_dir):
        logger.info("Keeping workspace %s", workspace.root)
        return False

    logger.info("Removing workspace %s", workspace.root)
    try:
        shutil.rmtree(workspace.root)
    except OSError as e:
        raise WorkspaceError(f"Cannot remove workspace {workspace.root}: {e}") from e
    return True


__all__ = [
    "WORKSPACE_PREFIX",
    "Workspace",
    "WorkspaceError",
    "create_workspace",
    "is_removable",
    "open_workspace",
    "remove_workspace",
]
