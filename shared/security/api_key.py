"""
Shared secret for service-to-service and cron calls (X-Internal-API-Key).

A missing key only warns so local development works, but the insecure default
must never reach production.
"""
import os
import secrets
import warnings

_INTERNAL_API_KEY: str = os.getenv("INTERNAL_API_KEY", "")

if not _INTERNAL_API_KEY:
    warnings.warn(
        "INTERNAL_API_KEY is not set. Cron and settlement endpoints accept an "
        "insecure default key. Set this env var in production!",
        stacklevel=2,
    )
    _INTERNAL_API_KEY = "insecure-default-change-me"

INTERNAL_API_KEY: str = _INTERNAL_API_KEY


def verify_api_key(provided_key: str | None) -> bool:
    """Constant-time comparison against the configured internal key."""
    if not provided_key:
        return False
    return secrets.compare_digest(str(provided_key), str(INTERNAL_API_KEY))
