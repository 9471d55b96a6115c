from __future__ import annotations

import re
import secrets
from typing import Callable

# Shared by request validation and generated names
USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_]+")
USERNAME_MIN_LENGTH = 5
USERNAME_MAX_LENGTH = 20

_DISALLOWED = re.compile(r"[^a-z0-9_]")


def is_valid_username(username: str) -> bool:
    return (
        USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH
        and bool(USERNAME_PATTERN.fullmatch(username))
    )


def sanitize_username_base(base: str) -> str:
    """Lowercase, strip to ``[a-z0-9_]`` and pad with digits to the minimum length."""
    cleaned = _DISALLOWED.sub("", (base or "").lower())[:USERNAME_MAX_LENGTH]
    while len(cleaned) < USERNAME_MIN_LENGTH:
        cleaned += str(secrets.randbelow(10))
    return cleaned


def generate_unique_username(base: str, exists: Callable[[str], bool]) -> str:
    """Probe ``exists`` until a free candidate is found.

    Collisions get an incrementing numeric suffix; the base is trimmed so the
    result never exceeds the maximum length. The store's unique index remains
    the final arbiter, so callers retry on a username constraint violation.
    """
    candidate = sanitize_username_base(base)
    stem = candidate
    counter = 0
    while exists(candidate):
        counter += 1
        suffix = str(counter)
        candidate = stem[: USERNAME_MAX_LENGTH - len(suffix)] + suffix
    return candidate
