"""Shared httpx client for the platform API.

The role provider, user store and audit store adapters all talk to the
same platform API (API_BASE_URL, API_TOKEN) through one pooled client.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from dojo_console.backend.core.config import get_web_settings

logger = logging.getLogger(__name__)

_client: Optional[httpx.AsyncClient] = None

# camelCase to snake_case mapping for platform user fields
_CAMEL_TO_SNAKE = {
    "userId": "id",
    "isActive": "active",
    "roleName": "role",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}


def normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    """Add snake_case aliases for camelCase keys, keeping the originals."""
    result = dict(data)
    for camel, snake in _CAMEL_TO_SNAKE.items():
        if camel in result and snake not in result:
            result[snake] = result[camel]
    return result


def unwrap(data: Any) -> Any:
    """Platform responses wrap the payload in ``{"response": ...}``."""
    if isinstance(data, dict) and "response" in data:
        return data["response"]
    return data


def get_client() -> httpx.AsyncClient:
    """Get or create the shared httpx client."""
    global _client
    if _client is None or _client.is_closed:
        settings = get_web_settings()
        base_url = str(settings.api_base_url).rstrip("/")
        headers = {"Content-Type": "application/json"}
        if settings.api_token:
            headers["Authorization"] = f"Bearer {settings.api_token}"
        _client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(connect=15.0, read=30.0, write=15.0, pool=10.0),
            follow_redirects=True,
        )
        logger.debug("Created platform API client for %s", base_url)
    return _client


async def close_client():
    """Close the shared httpx client."""
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        _client = None
