"""Room addressing for direct messages.

A DM channel has no stored record; both participants (and every history
query) derive the same room ID from the pair of principal IDs.
"""
from typing import Tuple

# Fixed separator between the two sorted principal IDs
DM_SEPARATOR = "-dm-"


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Return the two IDs in lexicographic order."""
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


def derive_dm_room_id(user_a: str, user_b: str) -> str:
    """Derive the canonical DM room ID for a pair of principals.

    Order-independent: ``derive_dm_room_id(a, b) == derive_dm_room_id(b, a)``.

    Example:
        >>> derive_dm_room_id("u2", "u1")
        'u1-dm-u2'
    """
    return DM_SEPARATOR.join(canonical_pair(user_a, user_b))
