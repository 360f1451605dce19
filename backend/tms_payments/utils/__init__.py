from tms_payments.utils.hashing import (
    generate_hash, generate_chain_hash,
    client_signature_payload, compute_signature, verify_signature,
)
from tms_payments.utils.validators import validate_identifier, validate_stop_name, normalize_stop_name

__all__ = [
    "generate_hash", "generate_chain_hash",
    "client_signature_payload", "compute_signature", "verify_signature",
    "validate_identifier", "validate_stop_name", "normalize_stop_name",
]
