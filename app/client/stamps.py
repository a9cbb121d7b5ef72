"""
Merchant-side client for issuing stamps and redeeming rewards.

Calls go straight to the API while the device is online. When it is offline,
or a call fails before reaching the server, the request is queued and the
caller gets a provisional result that is never treated as confirmed state.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from app.client.api_client import StampApiClient
from app.client.notifier import LoggingNotifier, Notifier
from app.client.offline_queue import OfflineOperationType, OfflineQueue
from app.client.sync import ConnectivityMonitor, SyncReport, SyncService
from app.core.config import ClientSettings, get_client_settings
from app.core.errors import RateLimited, StampError
from app.domain.payloads import normalize_reward_code
from app.domain.schemas import RedeemResponse, StampIssueResponse

logger = logging.getLogger(__name__)

OFFLINE_STAMP_MESSAGE = "You're offline. Stamps saved and will sync automatically."
OFFLINE_REDEMPTION_MESSAGE = "You're offline. Redemption saved and will sync automatically."


@dataclass
class ProvisionalStampResult:
    """Stand-in for a StampIssueResponse while the request waits in the offline queue."""
    offline_operation_id: str
    requested_count: int
    estimated_stamps: Optional[int] = None
    message: str = OFFLINE_STAMP_MESSAGE
    provisional: bool = True
    offline_mode: bool = True


@dataclass
class ProvisionalRedemptionResult:
    offline_operation_id: str
    reward_code: str
    message: str = OFFLINE_REDEMPTION_MESSAGE
    provisional: bool = True
    offline_mode: bool = True


def build_issue_payload(
    method: str,
    qr_code: str | None = None,
    card_id: str | None = None,
    customer_id: str | None = None,
    customer_email: str | None = None,
    count: Any = None,
) -> dict:
    body = {
        "method": method,
        "qrCode": qr_code,
        "cardId": card_id,
        "customerId": customer_id,
        "customerEmail": customer_email,
        "count": count,
    }
    return {key: value for key, value in body.items() if value is not None}


class StampClient:

    def __init__(
        self,
        api: StampApiClient,
        queue: OfflineQueue,
        sync: SyncService,
        connectivity: ConnectivityMonitor,
        notifier: Notifier | None = None,
        probe_interval_seconds: float = 30.0,
    ):
        self.api = api
        self.queue = queue
        self.sync = sync
        self.connectivity = connectivity
        self.notifier = notifier or LoggingNotifier()
        self.probe_interval_seconds = probe_interval_seconds

    async def aclose(self) -> None:
        await self.api.aclose()

    async def issue_stamps(
        self,
        method: str,
        qr_code: str | None = None,
        card_id: str | None = None,
        customer_id: str | None = None,
        customer_email: str | None = None,
        count: Any = None,
        current_stamps: int | None = None,
        total_stamps: int | None = None,
    ) -> StampIssueResponse | ProvisionalStampResult:
        """Issue stamps, falling back to the offline queue on network failure.

        `current_stamps` and `total_stamps`, when the caller knows them, are
        only used to estimate the provisional balance shown while offline.
        """
        payload = build_issue_payload(method, qr_code, card_id, customer_id, customer_email, count)

        if self.connectivity.online:
            try:
                body = await self.api.issue_stamps(payload)
            except httpx.TransportError as e:
                logger.warning(f"Stamp issuance could not reach the server, queuing: {e}")
                await self.connectivity.set_online(False)
            except StampError as e:
                self._notify_failure(e)
                raise
            else:
                response = StampIssueResponse.model_validate(body)
                self.notifier.success(response.message)
                return response

        operation = self.queue.enqueue(OfflineOperationType.ISSUE_STAMP, payload)
        requested = count if isinstance(count, int) and not isinstance(count, bool) else 1
        estimated = None
        if current_stamps is not None:
            estimated = current_stamps + requested
            if total_stamps is not None:
                estimated = min(estimated, total_stamps)
        self.notifier.info(OFFLINE_STAMP_MESSAGE)
        return ProvisionalStampResult(
            offline_operation_id=operation.id,
            requested_count=requested,
            estimated_stamps=estimated,
        )

    async def redeem_reward(self, reward_code: str) -> RedeemResponse | ProvisionalRedemptionResult:
        try:
            code = normalize_reward_code(reward_code)
        except StampError as e:
            self._notify_failure(e)
            raise

        if self.connectivity.online:
            try:
                body = await self.api.redeem_reward(code)
            except httpx.TransportError as e:
                logger.warning(f"Reward redemption could not reach the server, queuing: {e}")
                await self.connectivity.set_online(False)
            except StampError as e:
                self._notify_failure(e)
                raise
            else:
                response = RedeemResponse.model_validate(body)
                self.notifier.success(f"Reward redeemed: {response.reward}")
                return response

        operation = self.queue.enqueue(OfflineOperationType.REDEEM_REWARD, {"rewardCode": code})
        self.notifier.info(OFFLINE_REDEMPTION_MESSAGE)
        return ProvisionalRedemptionResult(offline_operation_id=operation.id, reward_code=code)

    async def sync_now(self, force: bool = False) -> SyncReport:
        return await self.sync.drain(force=force)

    async def watch_connectivity(self, interval_seconds: float | None = None) -> None:
        """Background loop: probe the API while offline, replay due operations while online.

        Run it with ``asyncio.create_task`` and cancel the task on shutdown.
        """
        interval = interval_seconds or self.probe_interval_seconds
        while True:
            try:
                if not self.connectivity.online:
                    await self.connectivity.probe(self.api)
                elif self.queue.pending_count():
                    await self.sync.drain()
            except Exception as e:
                logger.error(f"Connectivity check failed: {e}")
            await asyncio.sleep(interval)

    def _notify_failure(self, error: StampError) -> None:
        # Rate limiting is a deferral, not a rejection
        if isinstance(error, RateLimited):
            self.notifier.info(error.message)
        else:
            self.notifier.error(error.message)


def create_stamp_client(
    token_provider: Optional[Callable[[], Optional[str]]] = None,
    notifier: Notifier | None = None,
    client_settings: ClientSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    online: bool = True,
) -> StampClient:
    """Factory function to wire a StampClient from ClientSettings."""
    client_settings = client_settings or get_client_settings()
    notifier = notifier or LoggingNotifier()

    api = StampApiClient(
        base_url=client_settings.api_base_url,
        token_provider=token_provider,
        timeout=client_settings.request_timeout_seconds,
        transport=transport,
    )
    queue = OfflineQueue(client_settings.queue_dir)
    sync = SyncService(
        api,
        queue,
        notifier=notifier,
        max_retries=client_settings.max_retries,
        base_delay_seconds=client_settings.retry_base_delay_seconds,
        max_delay_seconds=client_settings.retry_max_delay_seconds,
    )
    connectivity = ConnectivityMonitor(
        online=online,
        on_reconnect=lambda: sync.drain(force=True),
        notifier=notifier,
    )
    return StampClient(
        api,
        queue,
        sync,
        connectivity,
        notifier=notifier,
        probe_interval_seconds=client_settings.probe_interval_seconds,
    )
