"""
Cryptographic Hashing Utilities — HMAC-SHA256 gateway signatures and
SHA-256 payload hashing for the audit trail.
"""
import hashlib
import hmac
import json
from typing import Union


def generate_hash(data: dict) -> str:
    """Generate a SHA-256 hash of a dictionary (deterministic, sorted keys)."""
    canonical = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def generate_chain_hash(current_data: dict, previous_hash: str = "") -> str:
    """Generate a chain hash: SHA-256(previous_hash + current_payload).
    Creates a tamper-evident linked chain for the audit trail.
    """
    current_hash = generate_hash(current_data)
    chain_input = f"{previous_hash}{current_hash}".encode("utf-8")
    return hashlib.sha256(chain_input).hexdigest()


def client_signature_payload(order_id: str, payment_id: str) -> bytes:
    """Payload the gateway signs on the checkout redirect: "<order_id>|<payment_id>"."""
    return f"{order_id}|{payment_id}".encode("utf-8")


def compute_signature(payload: Union[bytes, str], secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of payload keyed with secret."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: Union[bytes, str, None], signature: str | None, secret: str | None) -> bool:
    """Constant-time check of a gateway signature. Never raises.

    For webhooks, payload must be the raw request body exactly as received.
    """
    if not payload or not signature or not secret:
        return False
    try:
        expected = compute_signature(payload, secret)
        return hmac.compare_digest(expected, signature)
    except (TypeError, ValueError, UnicodeError):
        return False
