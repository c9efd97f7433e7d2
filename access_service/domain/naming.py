"""Random identifiers and cosmetic names."""

from __future__ import annotations

import re
import secrets

_ADJECTIVES = (
    "amber", "brave", "calm", "clever", "eager", "gentle", "golden", "jolly", "kind",
    "lively", "lucky", "merry", "misty", "neat", "quiet", "rapid", "silver", "sunny",
    "swift", "witty",
)
_NOUNS = (
    "badger", "bear", "dolphin", "eagle", "falcon", "fox", "hawk", "heron", "lion",
    "lynx", "otter", "owl", "panda", "raven", "tiger", "wolf",
)

_HANDLE_UNSAFE = re.compile(r"[^a-z0-9._-]+")


def generate_invite_code() -> str:
    """128 bits of randomness, hex encoded."""
    return secrets.token_hex(16)


def generate_invite_label() -> str:
    """Memorable adjective-adjective-noun label. Display only, never an identifier."""
    first, second = secrets.choice(_ADJECTIVES), secrets.choice(_ADJECTIVES)
    while second == first:
        second = secrets.choice(_ADJECTIVES)
    return f"{first}-{second}-{secrets.choice(_NOUNS)}"


def handle_candidates(remote_name: str, attempts: int) -> list[str]:
    """Local usernames to try for a remote account: its own name, then random suffixed variants."""
    name = remote_name.strip()
    base = _HANDLE_UNSAFE.sub("-", name.lower()).strip("-") or "user"
    candidates = [name] if name else []
    while len(candidates) < max(attempts, 1):
        candidates.append(f"{base}-{secrets.token_hex(3)}")
    return candidates
