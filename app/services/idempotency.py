"""
Idempotency Key & Payload Hash Derivation
Deterministic identifiers for checkout deduplication
"""

from typing import Optional, Sequence
import hashlib

DERIVED_KEY_LENGTH = 32
MAX_KEY_LENGTH = 255
ORGANIC = "organic"


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _join_ids(item_ids: Sequence[int]) -> str:
    return ",".join(str(i) for i in item_ids)


def generate_idempotency_key(
    affiliate_id: Optional[str],
    tier: str,
    routine_id: str,
    item_ids: Sequence[int],
) -> str:
    """
    Derive an idempotency key for requests that did not supply one.

    Format: first 32 hex chars of sha256("{affiliate}|{tier}|{routine}|{ids}")

    Byte-identical logical requests always derive the same key, so a client
    that never sends a key still gets deduplicated.

    Args:
        affiliate_id: Resolved creator id (None for organic traffic)
        tier: Routine tier name
        routine_id: Resolved routine id
        item_ids: Ordered variant id list

    Returns:
        Idempotency key string
    """
    stable_payload = f"{affiliate_id or ORGANIC}|{tier}|{routine_id}|{_join_ids(item_ids)}"
    return _sha256(stable_payload)[:DERIVED_KEY_LENGTH]


def compute_payload_hash(
    affiliate_id: Optional[str],
    routine_id: str,
    tier: str,
    item_ids: Sequence[int],
) -> str:
    """
    Full-length sha256 over the semantic request content.

    Field order differs from the key derivation. This is what gets
    compared against a stored reservation to detect a key reused for a
    different payload, including client-supplied keys.
    """
    return _sha256(f"{affiliate_id or ORGANIC}|{routine_id}|{tier}|{_join_ids(item_ids)}")


def normalize_client_key(raw: Optional[str]) -> Optional[str]:
    """
    Validate a client-supplied key, which is used verbatim.
    Returns None when absent or blank.

    Raises:
        ValueError: if the key is longer than the column allows
    """
    if raw is None:
        return None
    if not raw.strip():
        return None
    if len(raw) > MAX_KEY_LENGTH:
        raise ValueError(f"idempotency key must be at most {MAX_KEY_LENGTH} characters")
    return raw
