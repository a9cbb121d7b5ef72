"""
Replay of queued offline operations.

Draining walks the stamp queue and then the redemption queue, each strictly
in enqueue order. A transport failure stops the drain (the device is most
likely offline again) and schedules the failed operation for a later
attempt with exponential backoff, and so does a rate limit or a server
error. Any other rejection from the server is final and moves the operation
to the dead-letter file.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import httpx

from app.client.api_client import StampApiClient
from app.client.notifier import LoggingNotifier, Notifier
from app.client.offline_queue import OfflineOperation, OfflineOperationType, OfflineQueue
from app.core.errors import InternalError, RateLimited, StampError, Unauthorized
from app.core.timeutil import epoch_ms, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    synced: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    locked: bool = False


class _StopDrain(Exception):
    pass


class SyncService:

    def __init__(
        self,
        api: StampApiClient,
        queue: OfflineQueue,
        notifier: Notifier | None = None,
        max_retries: int = 5,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 300.0,
    ):
        self.api = api
        self.queue = queue
        self.notifier = notifier or LoggingNotifier()
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def backoff_seconds(self, retry_count: int) -> float:
        return min(self.base_delay_seconds * 2 ** max(retry_count - 1, 0), self.max_delay_seconds)

    async def drain(self, force: bool = False, now: datetime | None = None) -> SyncReport:
        """Replay queued operations.

        Args:
            force: Ignore backoff schedules (used when connectivity returns)
            now: Clock override for backoff bookkeeping

        Returns:
            SyncReport with per-outcome counts; `locked` is set when another
            drainer already holds the queue
        """
        now = now or utcnow()
        report = SyncReport()

        with self.queue.drain_lock() as acquired:
            if not acquired:
                logger.info("Offline queue is already being drained, skipping")
                report.locked = True
                return report

            try:
                for operation_type in OfflineOperationType:
                    await self._drain_queue(operation_type, force, now, report)
            except _StopDrain:
                pass

        if report.synced:
            self.notifier.success(f"Synced {report.synced} offline operation(s)")
        if report.dead_lettered:
            self.notifier.warning(f"{report.dead_lettered} offline operation(s) could not be synced")
        logger.info(
            f"Offline drain finished: {report.synced} synced, {report.failed} failed, "
            f"{report.dead_lettered} dead-lettered, {report.skipped} skipped"
        )
        return report

    async def _drain_queue(
        self, operation_type: OfflineOperationType, force: bool, now: datetime, report: SyncReport
    ) -> None:
        operations = self.queue.get(operation_type)
        for index, operation in enumerate(operations):
            # Later operations wait behind the head of the queue to keep ordering
            if not force and not operation.is_due(now):
                report.skipped += len(operations) - index
                return
            await self._replay(operation, now, report)
            self.queue.touch_drain_lock()

    async def _replay(self, operation: OfflineOperation, now: datetime, report: SyncReport) -> None:
        try:
            await self._send(operation)
        except httpx.TransportError as e:
            self._record_failure(operation, e, now, report)
            raise _StopDrain()
        except (RateLimited, InternalError) as e:
            # The server may accept it later; keep order and back off
            self._record_failure(operation, e, now, report)
            raise _StopDrain()
        except Unauthorized as e:
            logger.warning(f"Offline operation {operation.id} needs a fresh sign-in: {e.message}")
            self.notifier.warning("Sign in again to sync offline operations")
            report.failed += 1
            raise _StopDrain()
        except StampError as e:
            self.queue.dead_letter(operation, f"{e.kind}: {e.message}")
            report.dead_lettered += 1
            return

        self.queue.remove(operation.type, operation.id)
        report.synced += 1
        logger.info(f"Synced offline operation {operation.id} ({operation.type.value})")

    async def _send(self, operation: OfflineOperation) -> dict:
        if operation.type == OfflineOperationType.ISSUE_STAMP:
            return await self.api.issue_stamps(operation.payload)
        return await self.api.redeem_reward(operation.payload["rewardCode"])

    def _record_failure(
        self, operation: OfflineOperation, error: Exception, now: datetime, report: SyncReport
    ) -> None:
        operation.retry_count += 1
        if isinstance(error, StampError):
            operation.last_error = f"{error.kind}: {error.message}"
        else:
            operation.last_error = str(error) or type(error).__name__
        if operation.retry_count >= self.max_retries:
            self.queue.dead_letter(operation, f"Gave up after {operation.retry_count} attempts: {operation.last_error}")
            report.dead_lettered += 1
            return

        delay = self.backoff_seconds(operation.retry_count)
        operation.next_attempt_at = epoch_ms(now) + int(delay * 1000)
        self.queue.update(operation)
        report.failed += 1
        logger.warning(
            f"Offline operation {operation.id} failed (attempt {operation.retry_count}/{self.max_retries}), "
            f"retrying in {delay:.0f}s: {operation.last_error}"
        )


class ConnectivityMonitor:
    """Tracks online/offline state and drains the queue when the device comes back online."""

    def __init__(
        self,
        online: bool = True,
        on_reconnect: Optional[Callable[[], Awaitable[SyncReport]]] = None,
        notifier: Notifier | None = None,
    ):
        self._online = online
        self.on_reconnect = on_reconnect
        self.notifier = notifier or LoggingNotifier()

    @property
    def online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> SyncReport | None:
        was_online = self._online
        self._online = online

        if online and not was_online:
            logger.info("Connectivity restored")
            if self.on_reconnect:
                return await self.on_reconnect()
        elif not online and was_online:
            logger.info("Connectivity lost")
            self.notifier.info("You're offline. Stamps and redemptions will sync when you reconnect.")
        return None

    async def probe(self, api: StampApiClient) -> bool:
        """Check the API health endpoint and update the online state."""
        try:
            await api.health()
            online = True
        except httpx.TransportError:
            online = False
        except StampError:
            # The server answered, so the network is up
            online = True
        await self.set_online(online)
        return online
