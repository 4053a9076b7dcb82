"""
Utility functions for slugs, hashing, and text processing.
"""

import hashlib
import re
from datetime import datetime
from typing import Any, List, Optional


SLUG_MAX_LENGTH = 40

_NON_SLUG_CHARS = re.compile(r'[^a-z0-9]+')


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """
    Build a URL slug from a title or name.

    Args:
        text: Source text
        max_length: Maximum slug length

    Returns:
        Lowercase slug: runs of other characters become a single hyphen,
        leading and trailing hyphens are removed
    """
    if not text:
        return ''
    slug = _NON_SLUG_CHARS.sub('-', text.lower()).strip('-')
    return slug[:max_length].rstrip('-')


def calculate_sha256(data: bytes) -> str:
    """
    Calculate SHA256 hash of data.

    Args:
        data: Bytes to hash

    Returns:
        Hexadecimal hash string
    """
    return hashlib.sha256(data).hexdigest()


def coerce_tag_ids(value: Any) -> List[int]:
    """
    Normalise a tag selection to a list of unique ints, keeping order.

    Raises:
        ValueError: if an entry is not an integer id
    """
    if value is None or value == '':
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    tag_ids = []
    for item in value:
        if isinstance(item, bool):
            raise ValueError(f'Invalid tag id: {item!r}')
        tag_id = int(item)
        if tag_id not in tag_ids:
            tag_ids.append(tag_id)
    return tag_ids


def format_timestamp(dt: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp, to the second."""
    if dt is None:
        dt = datetime.utcnow()
    return dt.isoformat(timespec='seconds') + 'Z'

