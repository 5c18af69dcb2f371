"""
Protection of payment data: field encryption, tokenization, card helpers and
webhook signatures.

Encrypted fields use AES-256-GCM and are serialized as
``iv:authTag:ciphertext`` with every part hex encoded.
"""
import hashlib
import hmac
import json
import os
import re
import secrets
import time
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.config import settings

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_LIBYAN_MOBILE_RE = re.compile(r"^\+2189[1-5]\d{7}$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

_process_key: bytes | None = None


def generate_encryption_key() -> bytes:
    return os.urandom(KEY_LENGTH)


def _default_key() -> bytes:
    global _process_key
    if settings.PAYMENT_DATA_KEY:
        return bytes.fromhex(settings.PAYMENT_DATA_KEY)
    if _process_key is None:
        _process_key = generate_encryption_key()
    return _process_key


def encrypt_sensitive_data(data: str, key: bytes | None = None) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key or _default_key()).encrypt(iv, data.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext
    ciphertext, auth_tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{auth_tag.hex()}:{ciphertext.hex()}"


def decrypt_sensitive_data(encrypted_data: str, key: bytes | None = None) -> str:
    try:
        iv_hex, auth_tag_hex, ciphertext_hex = encrypted_data.split(":")
        iv = bytes.fromhex(iv_hex)
        sealed = bytes.fromhex(ciphertext_hex) + bytes.fromhex(auth_tag_hex)
        return AESGCM(key or _default_key()).decrypt(iv, sealed, None).decode("utf-8")
    except (InvalidTag, ValueError) as e:
        raise ValueError("Decryption failed - wrong key or corrupted data") from e


def tokenize_payment_data(data: dict[str, Any], key: bytes | None = None) -> str:
    """Encrypt payment data together with a timestamp and nonce so that equal
    inputs never produce reusable tokens."""
    token_data = {
        **data,
        "timestamp": int(time.time() * 1000),
        "nonce": secrets.token_hex(16),
    }
    return encrypt_sensitive_data(json.dumps(token_data), key)


def detokenize_payment_data(token: str, key: bytes | None = None) -> dict[str, Any]:
    try:
        return json.loads(decrypt_sensitive_data(token, key))
    except ValueError as e:
        raise ValueError("Invalid payment token") from e


def _to_base36(value: int) -> str:
    digits = ""
    while value:
        value, remainder = divmod(value, 36)
        digits = _BASE36[remainder] + digits
    return digits or "0"


def generate_payment_reference(prefix: str = "PAY") -> str:
    timestamp = _to_base36(int(time.time() * 1000))
    return f"{prefix}-{timestamp}-{secrets.token_hex(4)}".upper()


def validate_card_number(card_number: str) -> bool:
    """Luhn checksum over the digits of the card number."""
    digits = re.sub(r"\D", "", card_number)
    if len(digits) < 13 or len(digits) > 19:
        return False

    total = 0
    for position, char in enumerate(reversed(digits)):
        digit = int(char)
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit

    return total % 10 == 0


def mask_card_number(card_number: str) -> str:
    digits = re.sub(r"\D", "", card_number)
    if len(digits) <= 4:
        return digits
    return "*" * (len(digits) - 4) + digits[-4:]


def validate_libyan_mobile_number(phone_number: str) -> bool:
    return bool(_LIBYAN_MOBILE_RE.match(re.sub(r"\s", "", phone_number)))


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def generate_webhook_signature(payload: Any, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        _canonical_json(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_webhook_signature(payload: Any, signature: str | None, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature over the payload."""
    if not signature or not _HEX_RE.match(signature):
        return False
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature.lower())
