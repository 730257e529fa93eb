"""Common schemas for the admin console API."""
from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: Optional[dict] = None
