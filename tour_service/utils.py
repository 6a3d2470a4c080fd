"""Utility functions for common operations across the application."""

import re
import unicodedata


def normalize_email(email: str) -> str:
    """Convert email to lowercase and strip whitespace."""
    return email.strip().lower()


def slugify(value: str) -> str:
    """Lowercase ASCII slug with hyphens, e.g. 'The Forest Hiker' -> 'the-forest-hiker'."""
    ascii_value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    ascii_value = re.sub(r"[^\w\s-]", "", ascii_value).strip().lower()
    return re.sub(r"[-\s_]+", "-", ascii_value)


def filter_fields(data: dict, *allowed: str) -> dict:
    """Keep only the allowed keys of a request body."""
    return {key: value for key, value in data.items() if key in allowed}
