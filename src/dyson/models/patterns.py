"""Glob matching for repository names and tags."""

from collections.abc import Iterable
from fnmatch import fnmatchcase


def glob_match(pattern: str, value: str) -> bool:
    """Case-sensitive shell-style match; ``*`` alone matches everything."""
    return fnmatchcase(value, pattern)


def first_match(patterns: Iterable[str], value: str) -> str | None:
    """Return the first pattern that matches ``value``, if any."""
    for pattern in patterns:
        if glob_match(pattern, value):
            return pattern
    return None


def match_any(patterns: Iterable[str], value: str) -> bool:
    return first_match(patterns, value) is not None
