"""Audit entries for user mutations and the recorders that store them."""
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from dojo_console.backend.core.api_helper import get_client
from dojo_console.backend.core.errors import DownstreamError

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    DELETE = "DELETE"
    ROLE_CHANGE = "ROLE_CHANGE"
    ACTIVATE = "ACTIVATE"
    DEACTIVATE = "DEACTIVATE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEntry:
    """One attempted mutation of one target user."""

    action: AuditAction
    actor_id: str
    target_user_id: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    reason: Optional[str] = None
    success: bool = True
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditRecorder(ABC):
    """Sink for audit entries. Implementations may raise; callers log and move on."""

    @abstractmethod
    async def append(self, entry: AuditEntry) -> None:
        ...


class LogAuditRecorder(AuditRecorder):
    """Write audit entries to the ``audit`` logger."""

    def __init__(self, logger_name: str = "audit"):
        self._log = logging.getLogger(logger_name)

    async def append(self, entry: AuditEntry) -> None:
        self._log.info(
            "%s %s by %s: %s -> %s%s",
            entry.action.value,
            entry.target_user_id,
            entry.actor_id,
            entry.old_value,
            entry.new_value,
            "" if entry.success else f" FAILED ({entry.error})",
        )


class HttpAuditRecorder(AuditRecorder):
    """Post audit entries to the platform's audit endpoint."""

    def __init__(self, path: str, client: Optional[httpx.AsyncClient] = None):
        self._path = path
        self._client = client

    async def append(self, entry: AuditEntry) -> None:
        client = self._client or get_client()
        try:
            resp = await client.post(self._path, json=entry.to_dict())
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DownstreamError(f"Audit write failed: {e}") from e
