import functools
import logging
import threading
import time
from typing import Callable, TypeVar

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Postgres error code for unique_violation
UNIQUE_VIOLATION = "23505"

# One client per thread; the underlying HTTP/2 pool is not safe to share
_thread_local = threading.local()


def get_supabase_client() -> Client:
    """Get the thread-local service-role Supabase client."""
    if not settings.supabase_url or not settings.supabase_secret_key:
        raise RuntimeError(
            "Supabase credentials not configured. "
            "Set SUPABASE_URL and SUPABASE_SECRET_KEY environment variables."
        )

    client = getattr(_thread_local, "client", None)
    if client is None:
        client = create_client(settings.supabase_url, settings.supabase_secret_key)
        _thread_local.client = client
    return client


def reset_supabase_client() -> None:
    """Drop the thread-local client so the next call reconnects."""
    if hasattr(_thread_local, "client"):
        delattr(_thread_local, "client")


def init_db():
    """Verify the Supabase connection at startup.

    Note: Schema is applied from database/schema.py via Supabase migrations.
    """
    if not settings.supabase_url or not settings.supabase_secret_key:
        logger.warning("Supabase credentials not configured. Database features disabled.")
        return

    try:
        get_db().table("stamp_cards").select("id").limit(1).execute()
        logger.info("Supabase connection verified")
    except Exception as e:
        logger.warning(f"Supabase connection check failed: {e}")


def get_db() -> Client:
    """Get database client."""
    return get_supabase_client()


def is_unique_violation(error: Exception) -> bool:
    return isinstance(error, APIError) and error.code == UNIQUE_VIOLATION


def with_retry(max_retries: int = 2, delay: float = 0.1) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator that retries database operations on connection errors.

    Only connection-class failures are retried; PostgREST errors (constraint
    violations, bad filters) propagate on the first attempt.

    Args:
        max_retries: Maximum number of retry attempts (default 2)
        delay: Delay in seconds between retries (default 0.1)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except (httpx.RemoteProtocolError, httpx.ConnectError) as e:
                    if attempt >= max_retries:
                        logger.error(f"Connection error in {func.__name__} after {max_retries} retries: {e}")
                        raise
                    logger.warning(
                        f"Connection error in {func.__name__}, retrying ({attempt + 1}/{max_retries}): {e}"
                    )
                    reset_supabase_client()
                    time.sleep(delay)
            raise RuntimeError("unreachable")
        return wrapper
    return decorator
