"""File-based exclusive lock used to serialise credential refreshes."""

from __future__ import annotations

import logging
import os
import socket
import time
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, ValidationError

from ..errors import ClaudeTaskError

logger = logging.getLogger(__name__)


class LockAlreadyHeld(ClaudeTaskError):
    """Raised when the lock file already exists."""


class LockRecord(BaseModel):
    """Contents of a lock file: who holds it and since when."""

    task_id: str
    pid: int
    timestamp: int
    hostname: str

    @classmethod
    def for_current_process(cls, task_id: str, *, clock: Callable[[], float] = time.time) -> "LockRecord":
        return cls(
            task_id=task_id,
            pid=os.getpid(),
            timestamp=int(clock()),
            hostname=socket.gethostname(),
        )


def _pid_is_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class LockHandle:
    """Proof of lock ownership; releases the lock when used as a context manager."""

    def __init__(self, store: "LockStore", path: Path, record: LockRecord) -> None:
        self._store = store
        self.path = path
        self.record = record
        self._released = False

    def release(self) -> None:
        if not self._released:
            self._store.release(self.path)
            self._released = True

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class LockStore:
    """Create, inspect and delete lock files.

    Exclusivity relies solely on atomic create-if-absent semantics of the
    filesystem, so it holds across processes on the same host.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        pid_alive: Callable[[int], bool] = _pid_is_running,
    ) -> None:
        self._clock = clock
        self._pid_alive = pid_alive

    def acquire(self, path: Path, record: LockRecord) -> LockHandle:
        """Create the lock file exclusively; never blocks.

        The record is written to a private file first and hard-linked into
        place, so readers never observe a half-written lock.
        """

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        staging = path.with_name(f".{path.name}.{os.getpid()}.{id(record):x}")
        staging.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        try:
            os.link(staging, path)
        except FileExistsError as exc:
            raise LockAlreadyHeld(f"Lock {path} is already held") from exc
        finally:
            staging.unlink(missing_ok=True)

        logger.debug("Acquired lock", extra={"path": str(path), "task_id": record.task_id})
        return LockHandle(self, path, record)

    def read(self, path: Path) -> LockRecord | None:
        """Return the parsed record, or None when the file is missing or corrupt."""

        try:
            raw = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockRecord.model_validate_json(raw)
        except ValidationError:
            return None

    def is_stale(self, path: Path, max_age_seconds: float) -> bool:
        """True when the holder is old enough and no longer running.

        A missing file is not stale; an unparsable one always is.
        """

        try:
            raw = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        try:
            record = LockRecord.model_validate_json(raw)
        except ValidationError:
            return True
        return self._is_expired(record, max_age_seconds)

    def _is_expired(self, record: LockRecord, max_age_seconds: float) -> bool:
        age = self._clock() - record.timestamp
        return age > max_age_seconds and not self._pid_alive(record.pid)

    def reclaim_stale(self, path: Path, max_age_seconds: float) -> bool:
        """Remove ``path`` if it is stale; True when this call removed it.

        The lock is renamed to a private name before it is deleted. If the
        file moved aside turns out to be a newer lock than the one judged
        stale, it is linked back into place.
        """

        path = Path(path)
        if not path.exists():
            return False
        judged = self.read(path)
        if judged is not None and not self._is_expired(judged, max_age_seconds):
            return False
        aside = path.with_name(f".{path.name}.reclaim.{os.getpid()}.{id(judged):x}")
        try:
            os.rename(path, aside)
        except FileNotFoundError:
            return False
        try:
            if self.read(aside) != judged:
                try:
                    os.link(aside, path)
                except FileExistsError:
                    logger.debug("Lock re-acquired during reclaim", extra={"path": str(path)})
                return False
        finally:
            aside.unlink(missing_ok=True)
        return True

    def release(self, path: Path) -> None:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass


__all__ = ["LockAlreadyHeld", "LockHandle", "LockRecord", "LockStore"]
