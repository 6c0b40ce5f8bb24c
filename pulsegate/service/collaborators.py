from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx

from pulsegate.logging import get_logger
from pulsegate.service.errors import DependencyUnavailable

logger = get_logger(__name__)


class MessagingChannel(Protocol):
    """Outbound side of the chat transport."""

    async def send_message(self, identity: str, text: str) -> None: ...

    def is_ready(self) -> bool: ...


class AccountClient(Protocol):
    """Account/wallet service lookups used while linking a phone number."""

    async def verify_account_exists(self, phone_number: str) -> bool: ...

    async def get_user_id(self, phone_number: str) -> Optional[str]: ...


class UnattachedMessagingChannel:
    """Placeholder until the chat transport registers itself with the runtime."""

    def is_ready(self) -> bool:
        return False

    async def send_message(self, identity: str, text: str) -> None:
        raise DependencyUnavailable("messaging channel is not attached")


class GraphQLAccountClient:
    """Account lookups against the account service's GraphQL endpoint."""

    ACCOUNT_QUERY = (
        "query AccountByPhone($phone: String!) "
        "{ accountByPhone(phone: $phone) { id } }"
    )

    def __init__(
        self,
        api_url: Optional[str],
        *,
        api_token: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_url = api_url
        self.api_token = api_token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0), headers=headers
            )
        return self._client

    async def _lookup(self, phone_number: str) -> Optional[Dict[str, Any]]:
        if not self.is_configured:
            raise DependencyUnavailable("account service is not configured")
        client = await self._get_client()
        try:
            response = await client.post(
                self.api_url,
                json={"query": self.ACCOUNT_QUERY, "variables": {"phone": phone_number}},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "account_api_error", status_code=exc.response.status_code, error=str(exc)
            )
            raise DependencyUnavailable("account service error") from exc
        except httpx.HTTPError as exc:
            logger.error("account_api_unreachable", error=str(exc))
            raise DependencyUnavailable("account service unreachable") from exc
        if body.get("errors"):
            logger.warning("account_api_graphql_errors", errors=body["errors"])
        return (body.get("data") or {}).get("accountByPhone")

    async def verify_account_exists(self, phone_number: str) -> bool:
        return await self._lookup(phone_number) is not None

    async def get_user_id(self, phone_number: str) -> Optional[str]:
        account = await self._lookup(phone_number)
        return str(account["id"]) if account and account.get("id") else None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
