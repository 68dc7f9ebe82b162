"""pacman inside the target root."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from rpi_imagegen.chroot.executor import ChrootExecutionError, ChrootExecutor

logger = logging.getLogger(__name__)

KEYRING = "archlinuxarm"

MIRRORS = (
    "http://de.mirror.archlinuxarm.org/$arch/$repo",
    "http://mirror.archlinuxarm.org/$arch/$repo",
)


def render_mirrorlist(mirrors: Sequence[str] = MIRRORS) -> str:
    return "".join(f"Server = {mirror}\n" for mirror in mirrors)


class PackageManager:
    """Package operations in the target root via pacman."""

    def __init__(self, chroot: ChrootExecutor) -> None:
        self.chroot = chroot

    def init_keyring(self) -> None:
        """Initialize the pacman keyring and trust the distribution keys."""
        self.chroot.run(["pacman-key", "--init"])
        self.chroot.run(["pacman-key", "--populate", KEYRING])

    def write_mirrorlist(self, mirrors: Sequence[str] = MIRRORS) -> None:
        path = self.chroot.root / "etc/pacman.d/mirrorlist"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_mirrorlist(mirrors), encoding="utf-8")
        logger.info("Wrote %s", path)

    def sync(self, packages: Sequence[str] = ()) -> None:
        """Refresh the package databases, optionally installing packages."""
        self.chroot.run(["pacman", "-Sy", "--noconfirm", *packages])

    def install(self, packages: Sequence[str], overwrite: str | None = None) -> None:
        if not packages:
            return
        argv = ["pacman", "-S", "--noconfirm", "--needed"]
        if overwrite:
            argv += ["--overwrite", overwrite]
        self.chroot.run([*argv, *packages])

    def remove(self, packages: Sequence[str]) -> None:
        if packages:
            self.chroot.run(["pacman", "-R", "--noconfirm", *packages])

    def upgrade(self) -> None:
        self.chroot.run(["pacman", "-Syu", "--noconfirm"])

    def is_installed(self, package: str) -> bool:
        """Check the local package database."""
        try:
            self.chroot.run(["pacman", "-Q", package])
        except ChrootExecutionError as e:
            if e.exit_code is None:
                raise
            return False
        return True


__all__ = ["MIRRORS", "PackageManager", "render_mirrorlist"]
