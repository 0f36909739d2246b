"""
User ID generation.

User IDs are nanoid-style strings: 21 characters from the URL-safe
alphabet A-Za-z0-9_- (64 symbols), which keeps the collision probability
below 1% even at a trillion IDs.
"""

import secrets
import string
from typing import Optional, Set

ALPHABET = string.ascii_letters + string.digits + "_-"

DEFAULT_LENGTH = 21


def generate_user_id(length: int = DEFAULT_LENGTH, existing_ids: Optional[Set[str]] = None) -> str:
    """
    Generate a URL-safe random identifier.

    Args:
        length: Number of characters (default: 21)
        existing_ids: Optional set of IDs that must not be returned

    Returns:
        New identifier
    """
    while True:
        user_id = ''.join(secrets.choice(ALPHABET) for _ in range(length))
        if not existing_ids or user_id not in existing_ids:
            return user_id


def is_valid_nanoid(value: object) -> bool:
    """
    Check that a value is a 21-character URL-safe identifier.

    Example:
        >>> is_valid_nanoid(generate_user_id())
        True
        >>> is_valid_nanoid("1")
        False
    """
    if not isinstance(value, str) or len(value) != DEFAULT_LENGTH:
        return False
    return all(c in ALPHABET for c in value)
