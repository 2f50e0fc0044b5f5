"""Provide the pipeline's single-run lock with staleness recovery.

The lock is a timestamp file. A record younger than the staleness threshold
means another invocation is running; an older record is presumed abandoned
(e.g. the process was killed) and is reclaimed. The check-and-write itself is
serialized through an OS-level guard lock so two invocations starting at the
same instant cannot both win.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from filelock import FileLock, Timeout
from loguru import logger

from .constants import DEFAULT_STALE_LOCK_SECONDS
from .errors import LockError
from .utils import _parse_iso

GUARD_TIMEOUT_SECONDS = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineLock:
    """Advisory, cooperative lock shared by every pipeline invocation."""

    def __init__(
        self,
        lock_path: Path,
        *,
        stale_after_seconds: int = DEFAULT_STALE_LOCK_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.lock_path = lock_path
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._guard_path = lock_path.with_name(lock_path.name + ".guard")

    def read_timestamp(self) -> Optional[datetime]:
        """Return the recorded timestamp, or None if absent or unreadable."""
        try:
            raw = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LockError(f"Unable to read lock file {self.lock_path}: {exc}") from exc
        return _parse_iso(raw)

    def age_seconds(self) -> Optional[float]:
        if not self.lock_path.exists():
            return None
        stamp = self.read_timestamp()
        if stamp is None:
            return None
        return (self._clock() - stamp).total_seconds()

    def is_held(self) -> bool:
        """True when a non-stale record exists."""
        if not self.lock_path.exists():
            return False
        age = self.age_seconds()
        return age is not None and age < self.stale_after_seconds

    def acquire(self) -> bool:
        """Take the lock, reclaiming a stale record.

        Returns:
            False if a live record exists (no state is changed), True otherwise.

        Raises:
            LockError: If the state directory or lock record cannot be written.
        """
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockError(f"Unable to create state directory {self.lock_path.parent}: {exc}") from exc

        try:
            with FileLock(str(self._guard_path), timeout=GUARD_TIMEOUT_SECONDS):
                return self._acquire_unguarded()
        except Timeout:
            logger.warning("Lock guard {} busy; another invocation is acquiring", self._guard_path)
            return False

    def _acquire_unguarded(self) -> bool:
        if self.lock_path.exists():
            stamp = self.read_timestamp()
            now = self._clock()
            if stamp is not None and (now - stamp).total_seconds() < self.stale_after_seconds:
                return False
            age = "unknown" if stamp is None else f"{int((now - stamp).total_seconds())}s"
            logger.warning(
                "Stale lock detected (age={}, threshold={}s); reclaiming. "
                "A hung process from the previous run may still be alive.",
                age,
                self.stale_after_seconds,
            )
        self._write_record()
        return True

    def _write_record(self) -> None:
        try:
            self.lock_path.write_text(self._clock().isoformat(), encoding="utf-8")
        except OSError as exc:
            raise LockError(f"Unable to write lock file {self.lock_path}: {exc}") from exc

    def release(self) -> None:
        """Delete the record. Missing files and IO errors are not raised."""
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Failed to release lock {}: {}", self.lock_path, exc)

    @contextmanager
    def held(self) -> Iterator[bool]:
        """Yield whether the lock was acquired; release on every exit path."""
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
