import logging
from typing import Callable, Optional

import httpx

from app.core.errors import error_from_response

logger = logging.getLogger(__name__)

HTTP_ERROR_KINDS = {
    400: "validation",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    410: "expired",
    429: "rate_limited",
}


class StampApiClient:
    """Thin async wrapper over the stamp card HTTP API.

    Error responses are raised as the matching StampError subclass. Transport
    failures (httpx.TransportError) propagate unchanged so callers can tell a
    rejected request from one that never reached the server.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token_provider = token_provider
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "StampApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        token = self.token_provider() if self.token_provider else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        response = await self._client.request(method, path, json=json, headers=self._headers())
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_error:
            kind = body.get("errorType") or HTTP_ERROR_KINDS.get(response.status_code)
            error = error_from_response(kind, body.get("error"))
            logger.warning(f"{method} {path} failed with {response.status_code} ({error.kind}): {error.message}")
            raise error
        return body

    async def health(self) -> dict:
        return await self._request("GET", "/health")

    async def issue_stamps(self, payload: dict) -> dict:
        """POST /stamps/issue with a camelCase request body."""
        return await self._request("POST", "/stamps/issue", json=payload)

    async def redeem_reward(self, reward_code: str) -> dict:
        return await self._request("POST", "/rewards/redeem", json={"rewardCode": reward_code})

    async def claim_reward(self, card_id: str) -> dict:
        return await self._request("POST", "/rewards/claim", json={"cardId": card_id})

    async def create_qr_code(
        self,
        card_id: str,
        expires_in_hours: int = 24,
        is_single_use: bool = False,
        security_level: str = "M",
    ) -> dict:
        return await self._request(
            "POST",
            "/qr-codes",
            json={
                "cardId": card_id,
                "expiresInHours": expires_in_hours,
                "isSingleUse": is_single_use,
                "securityLevel": security_level,
            },
        )

