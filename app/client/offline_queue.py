"""
Offline operation queue.

Stamp issuances and reward redemptions that could not reach the API are
kept in small JSON files (one per operation type) under the client's queue
directory and replayed in enqueue order once the device is back online.
Operations that keep failing, or that the server rejects outright, are moved
to a dead-letter file next to their queue.
"""

import json
import logging
import os
import secrets
import string
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterator, Optional

from app.core.timeutil import epoch_ms, utcnow

logger = logging.getLogger(__name__)

OFFLINE_QUEUE_STAMPS = "offline-queue-stamps"
OFFLINE_QUEUE_REDEMPTIONS = "offline-queue-redemptions"
DEAD_LETTER_SUFFIX = ".dead"

DRAIN_LOCK_FILE = ".drain.lock"
STALE_LOCK_SECONDS = 600

_ID_ALPHABET = string.digits + string.ascii_lowercase


class OfflineOperationType(str, Enum):
    ISSUE_STAMP = "ISSUE_STAMP"
    REDEEM_REWARD = "REDEEM_REWARD"


QUEUE_KEYS = {
    OfflineOperationType.ISSUE_STAMP: OFFLINE_QUEUE_STAMPS,
    OfflineOperationType.REDEEM_REWARD: OFFLINE_QUEUE_REDEMPTIONS,
}


def generate_operation_id(now: datetime | None = None) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"offline-{epoch_ms(now or utcnow())}-{suffix}"


@dataclass
class OfflineOperation:
    id: str
    type: OfflineOperationType
    payload: dict
    timestamp: int  # epoch ms when queued
    retry_count: int = 0
    next_attempt_at: Optional[int] = None  # epoch ms
    last_error: Optional[str] = None

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= epoch_ms(now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
            "nextAttemptAt": self.next_attempt_at,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OfflineOperation":
        return cls(
            id=data["id"],
            type=OfflineOperationType(data["type"]),
            payload=data.get("payload") or {},
            timestamp=data["timestamp"],
            retry_count=data.get("retryCount", 0),
            next_attempt_at=data.get("nextAttemptAt"),
            last_error=data.get("lastError"),
        )


class OfflineQueue:
    """Durable, file-backed queue of operations waiting for connectivity."""

    def __init__(self, directory: str):
        self.directory = directory
        self._lock = threading.RLock()
        os.makedirs(directory, exist_ok=True)

    # ---- storage ----

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def _read(self, key: str) -> list[OfflineOperation]:
        path = self._path(key)
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return []
        except ValueError as e:
            # Keep the unreadable file for inspection and start the queue over
            corrupt = f"{path}.corrupt-{int(time.time())}"
            os.replace(path, corrupt)
            logger.error(f"Offline queue {key} was unreadable ({e}), moved to {corrupt}")
            return []
        return [OfflineOperation.from_dict(item) for item in raw]

    def _write(self, key: str, operations: list[OfflineOperation]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump([op.to_dict() for op in operations], f)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # ---- queue operations ----

    def enqueue(
        self, operation_type: OfflineOperationType, payload: dict, now: datetime | None = None
    ) -> OfflineOperation:
        now = now or utcnow()
        operation = OfflineOperation(
            id=generate_operation_id(now),
            type=operation_type,
            payload=payload,
            timestamp=epoch_ms(now),
        )
        key = QUEUE_KEYS[operation_type]
        with self._lock:
            operations = self._read(key)
            operations.append(operation)
            self._write(key, operations)
        logger.info(f"Queued offline operation {operation.id} ({operation_type.value})")
        return operation

    def get(self, operation_type: OfflineOperationType) -> list[OfflineOperation]:
        """Queued operations in enqueue order."""
        with self._lock:
            return self._read(QUEUE_KEYS[operation_type])

    def update(self, operation: OfflineOperation) -> None:
        key = QUEUE_KEYS[operation.type]
        with self._lock:
            operations = self._read(key)
            for i, existing in enumerate(operations):
                if existing.id == operation.id:
                    operations[i] = operation
                    self._write(key, operations)
                    return

    def remove(self, operation_type: OfflineOperationType, operation_id: str) -> bool:
        key = QUEUE_KEYS[operation_type]
        with self._lock:
            operations = self._read(key)
            remaining = [op for op in operations if op.id != operation_id]
            if len(remaining) == len(operations):
                return False
            self._write(key, remaining)
            return True

    def dead_letter(self, operation: OfflineOperation, reason: str) -> None:
        """Move an operation out of its queue into the dead-letter file."""
        key = QUEUE_KEYS[operation.type]
        operation.last_error = reason
        with self._lock:
            dead = self._read(key + DEAD_LETTER_SUFFIX)
            dead.append(operation)
            self._write(key + DEAD_LETTER_SUFFIX, dead)
            self.remove(operation.type, operation.id)
        logger.warning(f"Offline operation {operation.id} moved to dead letters: {reason}")

    def get_dead_letters(self, operation_type: OfflineOperationType) -> list[OfflineOperation]:
        with self._lock:
            return self._read(QUEUE_KEYS[operation_type] + DEAD_LETTER_SUFFIX)

    def pending_count(self, operation_type: OfflineOperationType | None = None) -> int:
        types = [operation_type] if operation_type else list(OfflineOperationType)
        return sum(len(self.get(t)) for t in types)

    # ---- single drainer ----

    @contextmanager
    def drain_lock(self) -> Iterator[bool]:
        """Hold the drain lock file for the duration of the block.

        Yields False, without waiting, when another drainer holds it.
        """
        path = os.path.join(self.directory, DRAIN_LOCK_FILE)
        acquired = self._try_lock(path)
        if not acquired and self._is_stale(path):
            logger.warning(f"Breaking stale offline drain lock {path}")
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
            acquired = self._try_lock(path)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass

    def touch_drain_lock(self) -> None:
        """Refresh the lock file so a long drain is not mistaken for a stale one."""
        try:
            os.utime(os.path.join(self.directory, DRAIN_LOCK_FILE), None)
        except FileNotFoundError:
            pass

    @staticmethod
    def _try_lock(path: str) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return True

    @staticmethod
    def _is_stale(path: str) -> bool:
        try:
            return time.time() - os.path.getmtime(path) > STALE_LOCK_SECONDS
        except FileNotFoundError:
            return True
