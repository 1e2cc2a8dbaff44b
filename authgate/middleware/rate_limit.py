"""
Rate limiting for second-factor endpoints.

Code and assertion submission is throttled per client address so a
six-digit TOTP space cannot be walked from one machine.
"""

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from authgate.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200/hour"],
    storage_uri=settings.redis_url or "memory://",
    headers_enabled=False,
    enabled=settings.rate_limit_enabled,
)

# Applied to every route that accepts a code or an assertion.
MFA_VERIFY_LIMIT = settings.mfa_verify_rate_limit


def configure_rate_limiting(app):
    """Attach the limiter and its 429 handler to the application."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
