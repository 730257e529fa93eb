"""Rate limiting for the admin console API.

Limits are keyed on the client address and kept in memory.
"""
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200/minute"],
)

# ── Per-endpoint rate limit presets ──────────────────────────
# Applied via @limiter.limit() decorators on endpoints.

RATE_READ = "120/minute"         # roles, progress, results
RATE_MUTATIONS = "60/minute"     # refresh, cancel, validate
RATE_BULK = "10/minute"          # bulk operation submission


def configure_limiter(enabled: bool) -> None:
    """Turn rate limiting on or off at startup."""
    limiter.enabled = enabled
    if not enabled:
        logger.info("Rate limiting disabled")
