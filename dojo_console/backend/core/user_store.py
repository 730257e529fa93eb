"""User store interface and its platform API adapter."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from dojo_console.backend.core.api_helper import get_client, normalize, unwrap
from dojo_console.backend.core.errors import DownstreamError, NotFound, SystemUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetUser:
    id: str
    role: str
    active: bool = True


class UserStore(ABC):
    """Per-user mutations. Implementations raise NotFound, DownstreamError
    or SystemUnavailable."""

    @abstractmethod
    async def get_user(self, user_id: str) -> TargetUser:
        ...

    @abstractmethod
    async def activate(self, user_id: str) -> None:
        ...

    @abstractmethod
    async def deactivate(self, user_id: str) -> None:
        ...

    @abstractmethod
    async def set_role(self, user_id: str, role: str, reason: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, user_id: str, reason: str) -> None:
        ...


def _user_from_payload(user_id: str, data: Any) -> TargetUser:
    data = unwrap(data)
    if isinstance(data, dict) and isinstance(data.get("user"), dict):
        data = data["user"]
    if not isinstance(data, dict):
        raise DownstreamError(f"Malformed user payload for {user_id}")
    data = normalize(data)
    role = data.get("role")
    if not isinstance(role, str) or not role:
        raise DownstreamError(f"User {user_id} has no role")
    active = data.get("active", not data.get("is_disabled", False))
    return TargetUser(id=str(data.get("id", user_id)), role=role, active=bool(active))


class HttpUserStore(UserStore):
    """User store backed by the platform users API.

    Status mapping: 404 -> NotFound, 503 and connection failures ->
    SystemUnavailable, anything else -> DownstreamError.
    """

    def __init__(self, path: str = "/api/v1/users", client: Optional[httpx.AsyncClient] = None):
        self._path = path.rstrip("/")
        self._client = client

    async def _request(
        self,
        method: str,
        user_id: str,
        suffix: str = "",
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        client = self._client or get_client()
        url = f"{self._path}/{user_id}{suffix}"
        try:
            resp = await client.request(method, url, json=json)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise SystemUnavailable(f"User store unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise DownstreamError(f"{method} {url} failed: {e}") from e

        if resp.status_code == 404:
            raise NotFound(f"User {user_id} not found")
        if resp.status_code == 503:
            raise SystemUnavailable(f"User store unavailable ({method} {url})")
        if resp.is_error:
            raise DownstreamError(f"{method} {url} returned {resp.status_code}")
        return resp

    async def get_user(self, user_id: str) -> TargetUser:
        resp = await self._request("GET", user_id)
        try:
            data = resp.json()
        except ValueError as e:
            raise DownstreamError(f"User {user_id}: response is not JSON") from e
        return _user_from_payload(user_id, data)

    async def activate(self, user_id: str) -> None:
        await self._request("POST", user_id, "/activate")

    async def deactivate(self, user_id: str) -> None:
        await self._request("POST", user_id, "/deactivate")

    async def set_role(self, user_id: str, role: str, reason: Optional[str] = None) -> None:
        body: Dict[str, Any] = {"role": role}
        if reason:
            body["reason"] = reason
        await self._request("PATCH", user_id, "/role", json=body)

    async def delete(self, user_id: str, reason: str) -> None:
        await self._request("DELETE", user_id, json={"reason": reason})
