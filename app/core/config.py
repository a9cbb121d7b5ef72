import logging
import os
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DOPPLER_SECRETS_URL = "https://api.doppler.com/v3/configs/config/secrets/download"


def load_doppler_secrets(token: str | None = None) -> int:
    """Copy secrets from Doppler into the process environment.

    Runs at import time, before Settings reads the environment. Variables
    already set in the environment win. Returns the number of secrets applied.
    """
    token = token or os.getenv("DOPPLER_TOKEN")
    if not token:
        return 0

    import requests

    try:
        response = requests.get(DOPPLER_SECRETS_URL, params={"format": "json"}, auth=(token, ""), timeout=30)
        response.raise_for_status()
        fetched = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Could not load secrets from Doppler, using the local environment: {e}")
        return 0

    applied = 0
    for name, value in fetched.items():
        if name not in os.environ:
            os.environ[name] = str(value)
            applied += 1
    logger.info(f"Applied {applied} of {len(fetched)} Doppler secrets")
    return applied


load_doppler_secrets()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: str = "development"
    cors_origin_pattern: str = r"^https://([a-z0-9-]+\.)?stampcard\.app$"

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""
    supabase_jwt_secret: str = ""  # JWT secret for HS256 token verification

    # Redis (sliding-window rate limit counters)
    redis_url: str = "redis://localhost:6379/0"

    # QR codes
    qr_min_expiry_hours: int = 1
    qr_max_expiry_hours: int = 72
    qr_default_expiry_hours: int = 24
    qr_replay_window_seconds: int = 300
    qr_clock_skew_seconds: int = 5

    # Stamp issuance
    max_stamps_per_request: int = 10
    merchant_rate_limit: int = 100  # stamp transactions per window, merchant-wide
    customer_rate_limit: int = 20  # stamp transactions per window, per merchant/customer pair
    rate_limit_window_minutes: int = 60

    # Rewards
    reward_code_length: int = 6
    reward_code_ttl_hours: int = 24


class ClientSettings(BaseSettings):
    """Settings for the merchant-side API client and its offline queue."""

    model_config = SettingsConfigDict(
        env_prefix="STAMP_CLIENT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_base_url: str = "http://localhost:8000"
    queue_dir: str = ".stamp-offline"
    max_retries: int = 5
    retry_base_delay_seconds: float = 5.0
    retry_max_delay_seconds: float = 300.0
    request_timeout_seconds: float = 15.0
    probe_interval_seconds: float = 30.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_client_settings() -> ClientSettings:
    return ClientSettings()


settings = get_settings()
