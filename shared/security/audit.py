import hashlib
import json
from typing import Any

from shared.config.database import new_id, utcnow


def checksum(details: Any) -> str:
    payload = json.dumps(details, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def create_audit_log(
    action: str,
    details: dict[str, Any],
    user_id: str | None = None,
    ip_address: str | None = None,
) -> dict[str, Any]:
    """Build a tamper-evident audit record. Persisting it is up to the caller."""
    return {
        "id": new_id(),
        "timestamp": utcnow(),
        "action": action,
        "user_id": user_id,
        "ip_address": ip_address,
        "details": details,
        "checksum": checksum(details),
    }
