"""
auth/passwords.py -- Credential hashing and secret strength policy.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection feeds bcrypt 4.x a secret longer than 72 bytes, which it rejects.

The cost factor lives inside every bcrypt string ("$2b$12$..."), so changing
BCRYPT_ROUNDS never breaks verification of older hashes. needs_rehash() lets
login upgrade old hashes transparently.

Secrets longer than 72 bytes are refused at creation (validate_secret_strength)
and never verify, instead of being silently truncated.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
import string

import bcrypt

from auth.errors import MalformedHashError, ValidationError
from core.config import Settings

_BCRYPT_MAX_BYTES = 72
_BCRYPT_RE = re.compile(r"^\$2[abxy]\$(\d{2})\$[./A-Za-z0-9]{53}$")


def hash_secret(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the plaintext secret at the given cost."""
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise ValidationError("Secret is too long.", errors=["max_length"])
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def _cost_of(hashed: str) -> int:
    match = _BCRYPT_RE.match(hashed or "")
    if match is None:
        raise MalformedHashError("Stored credential hash is not a bcrypt string.")
    return int(match.group(1))


def verify_secret(plain: str, hashed: str) -> bool:
    """Return True if plain matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. Raises MalformedHashError when
    hashed is not a bcrypt string.
    """
    _cost_of(hashed)
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        return False
    return bcrypt.checkpw(encoded, hashed.encode("utf-8"))


def needs_rehash(hashed: str, rounds: int) -> bool:
    """Return True when the hash was produced with a different cost than configured."""
    return _cost_of(hashed) != rounds


# Timing equalization [C1]: unknown emails still pay for one bcrypt check so
# response time does not reveal whether an account exists. Computed lazily
# per cost so tests running at rounds=4 are not slowed by a cost-12 hash.
_dummy_hashes: dict[int, str] = {}


def dummy_verify(plain: str, rounds: int = 12) -> None:
    """Burn one bcrypt verification against a throwaway hash."""
    hashed = _dummy_hashes.get(rounds)
    if hashed is None:
        hashed = _dummy_hashes.setdefault(rounds, hash_secret("casegate_timing_dummy", rounds))
    verify_secret(plain[:_BCRYPT_MAX_BYTES], hashed)


def validate_secret_strength(plain: str, settings: Settings) -> None:
    """Enforce the configured secret policy; raise ValidationError listing every failed rule."""
    failures: list[str] = []
    if len(plain) < settings.secret_min_length:
        failures.append(f"must be at least {settings.secret_min_length} characters")
    if len(plain.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        failures.append(f"must be at most {_BCRYPT_MAX_BYTES} bytes")
    if settings.secret_require_upper and not any(c.isupper() for c in plain):
        failures.append("must contain an uppercase letter")
    if settings.secret_require_lower and not any(c.islower() for c in plain):
        failures.append("must contain a lowercase letter")
    if settings.secret_require_digit and not any(c.isdigit() for c in plain):
        failures.append("must contain a digit")
    if settings.secret_require_special and not any(c in string.punctuation for c in plain):
        failures.append("must contain a special character")
    if failures:
        raise ValidationError("Secret does not meet the password policy.", errors=failures)
