"""
Validators — Identifier and amount checks applied before touching the
gateway or the store.
"""
import re

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_\-:.]{1,64}$")


def validate_identifier(value: str | None) -> bool:
    """Opaque ids (student, route, fee, gateway ids): 1-64 safe characters."""
    if not value:
        return False
    return bool(_IDENTIFIER.match(value.strip()))


def validate_stop_name(stop_name: str | None) -> bool:
    """Stop names are free text but must be non-blank and reasonably short."""
    if not stop_name:
        return False
    cleaned = stop_name.strip()
    return 0 < len(cleaned) <= 128


def validate_refund_amount(amount: int | None, paid: int) -> tuple[bool, str]:
    """A refund may be partial but never exceed what was captured."""
    if amount is None:
        return True, "Full refund"
    if amount <= 0:
        return False, "Refund amount must be positive"
    if amount > paid:
        return False, f"Refund amount exceeds captured amount ({paid})"
    return True, "Valid"


def normalize_stop_name(stop_name: str | None) -> str:
    """Collapse whitespace so 'Main  Gate ' and 'Main Gate' share a scope key."""
    if not stop_name:
        return ""
    return re.sub(r"\s+", " ", stop_name.strip())
