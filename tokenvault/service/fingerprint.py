"""Opaque token fingerprints.

A fingerprint is the hex digest of ``seed || timestamp || entropy``. The seed
(an email, an application label) need not be secret: the nanosecond clock
reading and 32 bytes from a CSPRNG dominate the digest input, so two calls
with the same seed, even from concurrent threads, never share an input and
therefore never share an output in practice.

Clock and entropy are injectable so tests can pin them; production callers
leave the defaults alone.
"""

from __future__ import annotations

import hashlib
import secrets
import time
from typing import Callable

Clock = Callable[[], int]
Entropy = Callable[[int], bytes]

ENTROPY_BYTES = 32


def _digest(algorithm: str):
    try:
        digest = hashlib.new(algorithm)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"unsupported hash algorithm: {algorithm}") from exc
    # shake_* digests have no fixed size and hexdigest() needs a length
    if not digest.digest_size:
        raise ValueError(f"variable-length hash algorithm not supported: {algorithm}")
    return digest


def check_algorithm(algorithm: str) -> str:
    """Return ``algorithm`` if it can back a fingerprint, else raise ``ValueError``."""
    _digest(algorithm)
    return algorithm


def generate(
    seed: str,
    algorithm: str = "sha256",
    *,
    clock: Clock = time.time_ns,
    entropy: Entropy = secrets.token_bytes,
) -> str:
    digest = _digest(algorithm)
    digest.update(seed.encode())
    digest.update(str(clock()).encode())
    digest.update(entropy(ENTROPY_BYTES))
    return digest.hexdigest()


class FingerprintGenerator:
    """Binds an algorithm and entropy/clock sources for repeated use."""

    def __init__(
        self,
        algorithm: str = "sha256",
        *,
        clock: Clock = time.time_ns,
        entropy: Entropy = secrets.token_bytes,
    ) -> None:
        self.algorithm = check_algorithm(algorithm)
        self.clock = clock
        self.entropy = entropy

    def __call__(self, seed: str) -> str:
        return generate(
            seed, self.algorithm, clock=self.clock, entropy=self.entropy
        )
