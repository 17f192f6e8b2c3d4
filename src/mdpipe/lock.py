"""Single-writer lock for a run directory and prefix."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from mdpipe.errors import PreconditionError

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RunLock:
    """Exclusive lock file holding the owner's pid.

    A lock whose owner is no longer running is treated as stale and
    replaced.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._held = False

    def _owner(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        for _ in range(2):
            try:
                fd = os.open(
                    self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644
                )
            except FileExistsError:
                owner = self._owner()
                if owner is not None and _pid_alive(owner):
                    raise PreconditionError(
                        f"Run is locked by process {owner} ({self.path})"
                    ) from None
                logger.warning("Removing stale lock %s", self.path)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as fh:
                fh.write(f"{os.getpid()}\n")
            self._held = True
            return
        raise PreconditionError(f"Failed to acquire lock {self.path}")

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        self.release()
