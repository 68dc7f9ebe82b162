"""Ordered release of build resources.

Every acquisition (workspace, loop device, mounts) registers a release
callable. Teardown runs the releases once, newest first, and keeps going
when one of them fails. Signal handlers only record the signal; the build
notices it at its next checkpoint and unwinds through the normal error
path.
"""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from types import FrameType
from typing import Any

from rpi_imagegen.types import CleanupWarning, ImagegenError

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class BuildInterrupted(ImagegenError):
    """Raised at a checkpoint after SIGINT or SIGTERM was received."""

    def __init__(self, signum: int) -> None:
        name = signal.Signals(signum).name
        super().__init__(f"Build interrupted by {name}", code="interrupted")
        self.signum = signum

    @property
    def exit_code(self) -> int:
        return 128 + self.signum


@dataclass
class Release:
    """A registered release step.

    Attributes:
        name: Resource name, used by discard() and in warnings.
        action: Callable releasing the resource. May return a list of
            CleanupWarning for partial failures.
        on_success_only: Only run when the build succeeded.
        manual: Shell command an operator can run instead.
    """

    name: str
    action: Callable[[], Any]
    on_success_only: bool = False
    manual: str | None = None


class CleanupController:
    """Tracks acquired resources and tears them down exactly once."""

    def __init__(self, skip_teardown: bool = False) -> None:
        self.skip_teardown = skip_teardown
        self.cancelled: int | None = None
        self._releases: list[Release] = []
        self._torn_down = False
        self._previous_handlers: dict[int, Any] = {}

    @property
    def pending(self) -> list[str]:
        return [r.name for r in self._releases]

    def register(
        self,
        name: str,
        release: Callable[[], Any],
        *,
        on_success_only: bool = False,
        manual: str | None = None,
    ) -> None:
        self._releases.append(Release(name, release, on_success_only, manual))
        logger.debug("Registered release of %s", name)

    def discard(self, name: str) -> None:
        """Forget a resource that the forward path already released."""
        for i in range(len(self._releases) - 1, -1, -1):
            if self._releases[i].name == name:
                del self._releases[i]
                return

    def teardown(self, success: bool) -> list[CleanupWarning]:
        """Release every registered resource, newest first.

        Args:
            success: Whether the build succeeded; success-only releases
                (workspace removal) are skipped otherwise.

        Returns:
            Warnings for the releases that failed. Calling teardown again
            does nothing and returns an empty list.
        """
        if self._torn_down:
            return []
        self._torn_down = True
        releases = list(reversed(self._releases))
        self._releases.clear()

        if self.skip_teardown:
            if releases:
                logger.warning("Cleanup skipped; release resources manually:")
                for release in releases:
                    if release.manual:
                        logger.warning("  %s", release.manual)
            return []

        warnings: list[CleanupWarning] = []
        for release in releases:
            if release.on_success_only and not success:
                logger.info("Keeping %s for inspection", release.name)
                continue
            try:
                outcome = release.action()
            except Exception as e:
                warning = CleanupWarning(release.name, getattr(e, "message", None) or str(e))
                logger.warning("Cleanup step failed: %s", warning)
                warnings.append(warning)
                continue
            if isinstance(outcome, list):
                warnings.extend(w for w in outcome if isinstance(w, CleanupWarning))

        if warnings:
            logger.warning("Cleanup finished with %d warning(s)", len(warnings))
        else:
            logger.debug("Cleanup finished")
        return warnings

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        if self.cancelled is None:
            self.cancelled = signum
        logger.warning(
            "Received %s, stopping at the next checkpoint", signal.Signals(signum).name
        )

    def install_signal_handlers(self, signals: Iterable[int] = HANDLED_SIGNALS) -> None:
        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def raise_if_cancelled(self) -> None:
        """Checkpoint between operations.

        Raises:
            BuildInterrupted: If a termination signal was received.
        """
        if self.cancelled is not None:
            raise BuildInterrupted(self.cancelled)


__all__ = [
    "BuildInterrupted",
    "CleanupController",
    "HANDLED_SIGNALS",
    "Release",
]
