from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ConfigurationError, NetmodError
from ..models import UserRef, Voter

logger = structlog.get_logger(__name__)

COMMITTEE_ERRORS = {
    "EMPTY": "Committee is not set",
    "NOT_ENOUGH_MEMBERS": "Committee has not enough members",
    "TOO_MANY_MEMBERS": "Committee has too many members",
    "INTERNAL_SERVER_ERROR": "Internal error while fetching the committee",
}


class BackendError(NetmodError):
    pass


class BackendClient:
    """HTTP client for the network backend: group registry, committee and user cache."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
        )
        self._owns_client = client is None

    async def get(self, path: str, *, retry: bool = True, params: Optional[dict] = None) -> Any:
        attempts = 3 if retry else 1
        retrying = AsyncRetrying(
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
            stop=stop_after_attempt(attempts),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                logger.debug("backend_request", path=path, attempt=attempt.retry_state.attempt_number)
                response = await self._client.get(path, params=params)
                if response.status_code == 404:
                    return None
                if response.status_code >= 400:
                    raise BackendError(f"backend error: {response.status_code} {response.text}")
                return response.json()
        raise BackendError("Retry exhausted")

    async def list_all_targets(self) -> list[int]:
        """Telegram ids of every group of the network. Not retried here."""
        data = await self.get("/tg/groups", retry=False)
        if data is None:
            raise BackendError("group listing not available")
        targets = [int(group["telegramId"]) for group in data]
        logger.info("backend_groups_listed", count=len(targets))
        return targets

    async def get_committee(self) -> list[Voter]:
        data = await self.get("/tg/permissions/committee")
        if data is None:
            raise BackendError("committee listing not available")
        error = data.get("error")
        if error:
            logger.error("backend_committee_error", error=error)
            raise ConfigurationError(COMMITTEE_ERRORS.get(error, f"Committee error: {error}"))
        voters = []
        for member in data.get("members", []):
            user = member.get("user") or {}
            voters.append(
                Voter(
                    user=UserRef(
                        id=int(member["userId"]),
                        first_name=user.get("firstName"),
                        last_name=user.get("lastName"),
                        username=user.get("username"),
                    ),
                    is_chair=bool(member.get("isChair")),
                )
            )
        return voters

    async def get_user(self, user_id: int) -> Optional[UserRef]:
        data = await self.get(f"/tg/users/{user_id}")
        if not data or data.get("error"):
            return None
        user = data.get("user", data)
        return UserRef(
            id=user_id,
            first_name=user.get("firstName"),
            last_name=user.get("lastName"),
            username=user.get("username"),
        )

    async def get_roles(self, user_id: int) -> list[str]:
        data = await self.get(f"/tg/permissions/roles/{user_id}")
        if not data:
            return []
        return [str(role) for role in data.get("roles") or []]

    async def resolve_username(self, username: str) -> Optional[int]:
        """Telegram id cached for ``username`` (case-insensitive, ``@`` optional), or None."""
        key = username.replace("@", "").strip().lower()
        if not key:
            return None
        data = await self.get(f"/tg/users/by-username/{key}")
        if not data or data.get("userId") is None:
            logger.info("backend_username_unknown", username=key)
            return None
        return int(data["userId"])

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
