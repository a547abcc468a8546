"""ULID generation helper."""

import ulid


def generate_ulid() -> str:
    """Generate a new ULID string (26 chars, lexicographically time-ordered)."""
    return str(ulid.ULID())
