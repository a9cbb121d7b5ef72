"""
Stamp issuance rate limiting.

Two trailing windows guard against abuse: merchant-wide and per
merchant/customer pair. Counters live in Redis sorted sets (one member per
stamp transaction, scored by time) so a check is O(log n). When Redis is
unreachable the limiter falls back to counting stamp transactions in the
ledger.

Redis only sees transactions recorded while it was reachable, so a window
is rebuilt from the ledger before it is trusted: the first time this process
uses it, whenever its key is missing, and after any Redis failure.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

import redis

from app.core.config import settings
from app.core.errors import RateLimited
from app.core.timeutil import parse_timestamp
from app.repositories.transaction import TransactionRepository

logger = logging.getLogger(__name__)

# Redis connection (lazy initialized)
_redis: Optional[redis.Redis] = None

# Windows rebuilt from the ledger since Redis was last seen failing
_synced_keys: set[str] = set()

KEY_PREFIX = "ratelimit:"


def get_redis() -> redis.Redis:
    """Get or create Redis connection."""
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def is_redis_available() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception as e:
        logger.debug(f"Redis unavailable, using ledger counts: {e}")
        return False


def merchant_key(merchant_id: str) -> str:
    return f"{KEY_PREFIX}merchant:{merchant_id}"


def pair_key(merchant_id: str, customer_id: str) -> str:
    return f"{KEY_PREFIX}pair:{merchant_id}:{customer_id}"


class StampRateLimiter:

    def __init__(
        self,
        merchant_limit: int | None = None,
        customer_limit: int | None = None,
        window: timedelta | None = None,
    ):
        self.merchant_limit = merchant_limit or settings.merchant_rate_limit
        self.customer_limit = customer_limit or settings.customer_rate_limit
        self.window = window or timedelta(minutes=settings.rate_limit_window_minutes)

    @property
    def key_ttl(self) -> int:
        return int(self.window.total_seconds()) + 60

    def check(self, merchant_id: str, customer_id: str, now: datetime) -> None:
        """Raise RateLimited if either window is already full."""
        merchant_count, pair_count = self._counts(merchant_id, customer_id, now)

        if merchant_count >= self.merchant_limit:
            logger.warning(f"Rate limit hit for merchant {merchant_id}: {merchant_count} stamp transactions")
            raise RateLimited(
                "Too many stamps issued in the last hour. Please try again later.",
                scope="merchant",
            )
        if pair_count >= self.customer_limit:
            logger.warning(
                f"Rate limit hit for merchant {merchant_id} / customer {customer_id}: {pair_count} stamp transactions"
            )
            raise RateLimited(
                "Too many stamps issued to this customer in the last hour. Please try again later.",
                scope="customer",
            )

    def record(self, merchant_id: str, customer_id: str, now: datetime) -> None:
        """Count one stamp transaction against both windows."""
        if not is_redis_available():
            _synced_keys.clear()
            return
        try:
            score = now.timestamp()
            member = f"{score}:{uuid.uuid4().hex[:8]}"
            pipe = get_redis().pipeline()
            for key in (merchant_key(merchant_id), pair_key(merchant_id, customer_id)):
                pipe.zadd(key, {member: score})
                pipe.expire(key, self.key_ttl)
            pipe.execute()
        except Exception as e:
            _synced_keys.clear()
            logger.warning(f"Failed to record rate limit counters: {e}")

    def _counts(self, merchant_id: str, customer_id: str, now: datetime) -> tuple[int, int]:
        since = now - self.window
        scopes = [
            (merchant_key(merchant_id), None),
            (pair_key(merchant_id, customer_id), customer_id),
        ]
        if is_redis_available():
            try:
                client = get_redis()
                pipe = client.pipeline()
                for key, _ in scopes:
                    pipe.zremrangebyscore(key, "-inf", since.timestamp())
                    pipe.zcard(key)
                    pipe.exists(key)
                results = pipe.execute()

                counts = []
                for index, (key, scope_customer) in enumerate(scopes):
                    _, count, exists = results[index * 3:index * 3 + 3]
                    if key in _synced_keys and exists:
                        counts.append(int(count))
                    else:
                        counts.append(self._rebuild(client, key, merchant_id, scope_customer, since))
                return counts[0], counts[1]
            except Exception as e:
                _synced_keys.clear()
                logger.warning(f"Redis rate limit check failed, using ledger counts: {e}")
        else:
            _synced_keys.clear()

        return (
            TransactionRepository.count_stamps_since(merchant_id, since),
            TransactionRepository.count_stamps_since(merchant_id, since, customer_id=customer_id),
        )

    def _rebuild(
        self, client: redis.Redis, key: str, merchant_id: str, customer_id: str | None, since: datetime
    ) -> int:
        """Replace a window with the ledger's stamp transactions and return its size."""
        rows = TransactionRepository.list_stamps_since(merchant_id, since, customer_id=customer_id)
        pipe = client.pipeline()
        pipe.delete(key)
        if rows:
            pipe.zadd(key, {row["id"]: parse_timestamp(row["timestamp"]).timestamp() for row in rows})
            pipe.expire(key, self.key_ttl)
        pipe.execute()
        _synced_keys.add(key)
        logger.info(f"Rebuilt rate limit window {key} from {len(rows)} ledger transaction(s)")
        return len(rows)


def create_rate_limiter() -> StampRateLimiter:
    return StampRateLimiter()
