"""Shared validation utilities"""

import re
from typing import Optional

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")


def validate_slug(slug: Optional[str]) -> str:
    """
    Validate a URL slug.

    Raises:
        ValueError: If the slug is empty or has characters other than
            lowercase letters, numbers and hyphens
    """
    if not slug or not slug.strip():
        raise ValueError("Slug is required")

    slug = slug.strip()
    if not SLUG_PATTERN.match(slug):
        raise ValueError("Slug can only contain lowercase letters, numbers, and hyphens")
    return slug
