"""
Deterministic experiment assignment.

Hashes (user_id, experiment_id) so the same user always lands in the same
variant, in any process and after restarts. A second, salted hash gates
which users enter the experiment at all (traffic allocation).
"""

import hashlib
import logging
from typing import List, Optional, Sequence

from .schema import Variant

logger = logging.getLogger(__name__)

TRAFFIC_SALT = "traffic"


def _hash_to_bucket(user_id: str, experiment_id: str, salt: str = "", buckets: int = 100) -> int:
    """
    Deterministic hash to [0, buckets - 1].

    Same user + experiment (+ salt) always maps to the same bucket.
    """
    key = f"{user_id}:{experiment_id}:{salt}"
    h = hashlib.sha256(key.encode()).hexdigest()
    return int(h[:8], 16) % buckets


def in_traffic(user_id: str, experiment_id: str, traffic_allocation_percent: float) -> bool:
    """
    Whether the user falls inside the experiment's traffic allocation.

    Uses a salted hash independent of variant selection, resolved to 0.01%
    so fractional percentages are honoured. 0 admits nobody, 100 admits all.
    """
    position = _hash_to_bucket(user_id, experiment_id, TRAFFIC_SALT, buckets=10000) / 100.0
    return position < traffic_allocation_percent


def canonical_order(variants: Sequence[Variant]) -> List[Variant]:
    """Variants in the order their allocation ranges are laid out (by id)."""
    return sorted(variants, key=lambda v: v.id)


def select_variant(user_id: str, experiment_id: str, variants: Sequence[Variant]) -> Variant:
    """
    Pick the variant whose allocation range contains hash(user, experiment) mod 100.

    Args:
        user_id: User (or session) identifier
        experiment_id: Experiment identifier
        variants: Variants whose allocation_percentage values sum to 100

    Returns:
        The selected Variant
    """
    if not variants:
        raise ValueError(f"Experiment {experiment_id} has no variants")
    bucket = _hash_to_bucket(user_id, experiment_id)
    ordered = canonical_order(variants)
    cumulative = 0.0
    for variant in ordered:
        cumulative += variant.allocation_percentage
        if bucket < cumulative:
            return variant
    # Only reachable if allocations sum to slightly under 100
    return ordered[-1]


def assign_user(
    user_id: str,
    experiment_id: str,
    variants: Sequence[Variant],
    traffic_allocation_percent: float = 100.0,
) -> Optional[Variant]:
    """
    Pure assignment: traffic gate then variant selection. No persistence.

    Returns:
        Variant, or None when the user is outside the traffic allocation
    """
    if not in_traffic(user_id, experiment_id, traffic_allocation_percent):
        return None
    return select_variant(user_id, experiment_id, variants)
