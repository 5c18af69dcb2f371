import time
from typing import Callable

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from .jwt_handler import verify_access_token
from .stores import CounterRecord, CounterStore, InMemoryCounterStore


def user_id_or_ip(request: Request) -> str:
    """
    Key function for SlowAPI.
    Extracts the user ID directly from the Authorization header if available.
    Falls back to the client's IP address if unauthenticated.
    """
    auth_header = request.headers.get("Authorization")

    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ")[1]
        payload = verify_access_token(token)
        if payload and "sub" in payload:
            return f"user:{payload['sub']}"

    return f"ip:{get_remote_address(request)}"

# HTTP level limits for the public API
limiter = Limiter(key_func=user_id_or_ip)


class PaymentRateLimiter:
    """
    Fixed-window attempt counter for payment operations.

    The window restarts on the first attempt after it expired; it does not
    slide.
    """

    DEFAULT_MAX_ATTEMPTS = 10
    DEFAULT_WINDOW_SECONDS = 60.0

    def __init__(self, store: CounterStore | None = None, clock: Callable[[], float] = time.monotonic):
        self.store = store or InMemoryCounterStore()
        self.clock = clock

    def check_rate_limit(
        self,
        identifier: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> bool:
        """Count one attempt. Returns False when the identifier is over its limit."""
        now = self.clock()
        record = self.store.get(identifier)

        if record is None or now > record.timestamp:
            self.store.set(identifier, CounterRecord(count=1, timestamp=now + window_seconds))
            return True

        if record.count >= max_attempts:
            return False

        record.count += 1
        self.store.set(identifier, record)
        return True

    def reset_rate_limit(self, identifier: str) -> None:
        self.store.delete(identifier)

    def get_remaining_attempts(self, identifier: str, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> int:
        record = self.store.get(identifier)
        # The record holds the end of its window
        if record is None or self.clock() > record.timestamp:
            return max_attempts
        return max(0, max_attempts - record.count)


payment_rate_limiter = PaymentRateLimiter()
