"""Credential synchronisation across concurrent task launches.

Every task launch calls :meth:`CredentialSyncManager.sync_if_needed` before it
starts the agent. When credentials were validated recently the call is a cheap
file read. Otherwise exactly one caller, chosen through the lock store, runs the
refresh function while the others wait and re-check freshness.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Awaitable, Callable

from pydantic import BaseModel, ValidationError

from ..errors import ClaudeTaskError
from .lock import LockAlreadyHeld, LockRecord, LockStore

logger = logging.getLogger(__name__)

METADATA_DIR_NAME = ".credential_metadata"
LOCK_FILE = "sync_lock"
LAST_SYNC_FILE = "last_sync"
LAST_VALIDATED_FILE = "last_validated"

_CREDENTIAL_ERROR_MARKERS = (
    "unauthorized",
    "401",
    "authentication failed",
    "invalid credentials",
    "token expired",
)

RefreshFn = Callable[[], Awaitable[str]]


class LockContentionError(ClaudeTaskError):
    """Raised when the sync lock could not be acquired within the attempt budget."""


class LastSync(BaseModel):
    synced_at: int
    credential_hash: str
    synced_by: str


class LastValidated(BaseModel):
    validated_at: int
    validated_by: str
    credential_hash: str


def compute_credential_hash(content: str) -> str:
    return "sha256:" + hashlib.sha256(content.encode("utf-8")).hexdigest()


def is_credential_error(message: str) -> bool:
    """Return True when an error message looks like an authentication failure."""

    lowered = message.lower()
    return any(marker in lowered for marker in _CREDENTIAL_ERROR_MARKERS)


class CredentialSyncManager:
    """Coordinates credential refreshes through files under the metadata directory."""

    def __init__(
        self,
        task_base_home_dir: Path,
        task_id: str,
        *,
        lock_store: LockStore | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_delay: float = 10.0,
        max_attempts: int = 6,
        freshness_window: int = 300,
        stale_lock_age: int = 60,
    ) -> None:
        self.metadata_dir = Path(task_base_home_dir) / METADATA_DIR_NAME
        self.task_id = task_id
        self._clock = clock
        self._sleep = sleep
        self._lock_store = lock_store or LockStore(clock=clock)
        self._retry_delay = retry_delay
        self._max_attempts = max_attempts
        self._freshness_window = freshness_window
        self._stale_lock_age = stale_lock_age

    @property
    def lock_path(self) -> Path:
        return self.metadata_dir / LOCK_FILE

    @property
    def last_sync_path(self) -> Path:
        return self.metadata_dir / LAST_SYNC_FILE

    @property
    def last_validated_path(self) -> Path:
        return self.metadata_dir / LAST_VALIDATED_FILE

    def _now(self) -> int:
        return int(self._clock())

    def read_last_sync(self) -> LastSync | None:
        return self._read_model(self.last_sync_path, LastSync)

    def read_last_validated(self) -> LastValidated | None:
        return self._read_model(self.last_validated_path, LastValidated)

    @staticmethod
    def _read_model(path: Path, model: type[BaseModel]):
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable credential metadata", extra={"path": str(path), "error": str(exc)})
            return None

    def credentials_are_fresh(self) -> bool:
        validated = self.read_last_validated()
        if validated is None:
            return False
        return self._now() - validated.validated_at < self._freshness_window

    async def sync_if_needed(self, refresh_fn: RefreshFn, *, force: bool = False) -> bool:
        """Refresh credentials unless they were validated recently.

        Returns True when this call ran ``refresh_fn``, False when the
        credentials were already fresh or another holder refreshed them while
        this caller waited.
        """

        if not force and self.credentials_are_fresh():
            logger.debug("Credentials recently validated; skipping sync", extra={"task_id": self.task_id})
            return False

        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        record = LockRecord.for_current_process(self.task_id, clock=self._clock)

        attempt = 0
        while True:
            try:
                handle = self._lock_store.acquire(self.lock_path, record)
                break
            except LockAlreadyHeld:
                pass

            if self._lock_store.reclaim_stale(self.lock_path, self._stale_lock_age):
                logger.warning("Reclaimed stale credential sync lock", extra={"path": str(self.lock_path)})
                continue

            attempt += 1
            if attempt >= self._max_attempts:
                raise LockContentionError(
                    f"Could not acquire credential sync lock {self.lock_path} "
                    f"after {self._max_attempts} attempts"
                )

            logger.info(
                "Credential sync in progress elsewhere; waiting",
                extra={"attempt": attempt, "delay": self._retry_delay},
            )
            await self._sleep(self._retry_delay)
            if not force and self.credentials_are_fresh():
                logger.info("Credentials refreshed by another task", extra={"task_id": self.task_id})
                return False

        try:
            content = await refresh_fn()
            credential_hash = compute_credential_hash(content)
            now = self._now()
            self._write(
                self.last_sync_path,
                LastSync(synced_at=now, credential_hash=credential_hash, synced_by=self.task_id),
            )
            self._write_validated(credential_hash)
            logger.info("Credentials synchronised", extra={"task_id": self.task_id, "hash": credential_hash})
        finally:
            handle.release()
        return True

    def update_validation_timestamp(self) -> None:
        """Record that a task just ran successfully with the current credentials."""

        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        last_sync = self.read_last_sync()
        self._write_validated(last_sync.credential_hash if last_sync else "unknown")

    def _write_validated(self, credential_hash: str) -> None:
        now = self._now()
        previous = self.read_last_validated()
        if previous is not None:
            now = max(now, previous.validated_at)
        self._write(
            self.last_validated_path,
            LastValidated(validated_at=now, validated_by=self.task_id, credential_hash=credential_hash),
        )

    @staticmethod
    def _write(path: Path, model: BaseModel) -> None:
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        tmp.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)


__all__ = [
    "CredentialSyncManager",
    "LastSync",
    "LastValidated",
    "LockContentionError",
    "compute_credential_hash",
    "is_credential_error",
]
