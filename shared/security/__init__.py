from .jwt_handler import create_access_token, verify_access_token
from .api_key import verify_api_key
from .dependencies import get_current_claims, get_current_user, verify_internal_api_key
from .rate_limiter import limiter, user_id_or_ip, PaymentRateLimiter, payment_rate_limiter
from .stores import CounterRecord, CounterStore, InMemoryCounterStore

__all__ = [
    "create_access_token",
    "verify_access_token",
    "verify_api_key",
    "get_current_claims",
    "get_current_user",
    "verify_internal_api_key",
    "limiter",
    "user_id_or_ip",
    "PaymentRateLimiter",
    "payment_rate_limiter",
    "CounterRecord",
    "CounterStore",
    "InMemoryCounterStore",
]
