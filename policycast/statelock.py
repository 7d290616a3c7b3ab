"""
Exclusive ownership of a pipeline state directory.

The ledger sequence counter, the ingest dedup set and the digest window
position live in memory, so only one pipeline may write a state directory
at a time. The lock is an OS advisory lock on <state_dir>/pipeline.lock;
the OS releases it when the owning process exits, including on a crash.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import ConfigError, StateLocked

if os.name == "nt":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)


class StateDirLock:
    FILENAME = "pipeline.lock"

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.path = state_dir / self.FILENAME
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock without waiting. Raises StateLocked if it is taken."""
        if self._fd is not None:
            return
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ConfigError(f"cannot open state directory {self.state_dir}: {e}") from e
        try:
            if os.name == "nt":
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            holder = self._holder()
            raise StateLocked(
                f"state directory {self.state_dir} is in use by another pipeline"
                + (f" (pid {holder})" if holder else "")
            ) from None

        try:
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
        except OSError as e:
            os.close(fd)
            raise ConfigError(f"cannot write {self.path}: {e}") from e
        self._fd = fd
        logger.debug("Locked state directory %s", self.state_dir)

    def _holder(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            if os.name == "nt":
                os.lseek(fd, 0, os.SEEK_SET)
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released state directory %s", self.state_dir)

    def __enter__(self) -> "StateDirLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
