"""Room code generation and validation."""

from __future__ import annotations

import math
import secrets

# purpose: mint unguessable room codes that survive being read aloud or retyped
# outputs: fixed-length codes over an alphabet without 0/O, 1/I/l look-alikes
# status: pilot

ALPHABET = "23456789abcdefghijkmnopqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ"
DEFAULT_LENGTH = 8
MIN_ENTROPY_BITS = 40

_ALPHABET_SET = frozenset(ALPHABET)


def entropy_bits(length: int = DEFAULT_LENGTH) -> float:
    """Return the guessing entropy of a code of ``length`` characters."""

    return length * math.log2(len(ALPHABET))


def generate(length: int = DEFAULT_LENGTH) -> str:
    """Draw a fresh code from the OS CSPRNG."""

    if entropy_bits(length) < MIN_ENTROPY_BITS:
        raise ValueError(f"Room codes of length {length} fall below {MIN_ENTROPY_BITS} bits of entropy")
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def is_well_formed(code: str | None, length: int = DEFAULT_LENGTH) -> bool:
    """Check shape only; a well-formed code need not belong to a live room."""

    if not code or len(code) != length:
        return False
    return all(char in _ALPHABET_SET for char in code)
