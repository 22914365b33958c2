"""Field hashing shared by every accumulator and derivation.

All values handled by the protocol are elements of the BN254 scalar field.
Both hashes are Poseidon over that field with the x^5 S-box, laid out as
circomlib lays it out: the state starts with a zero capacity element
followed by the inputs, and the digest is the first state element after
the permutation. hash_left_right is the width-3 instance, hash5 the
width-6 one.

This module is the only place that mirrors the contract-side hash. Trees,
epoch keys, nullifiers and leaves all route through these two functions.
"""

from __future__ import annotations

import threading
from functools import lru_cache
from typing import Iterable

import poseidon


SNARK_FIELD_SIZE = (
    21888242871839275222246405745257275088548364400416034343698204186575808495617
)

SECURITY_LEVEL = 128
SBOX_ALPHA = 5

# Marker folded into an epoch-key hashchain when its epoch is sealed.
HASHCHAIN_END_MARKER = 1

# Permutation instances keep their state between calls.
_permutation_lock = threading.Lock()


@lru_cache(maxsize=None)
def _permutation(width: int) -> poseidon.Poseidon:
    return poseidon.Poseidon(SNARK_FIELD_SIZE, SECURITY_LEVEL, SBOX_ALPHA, width - 1, width)


def _check_field(value: int) -> int:
    if value < 0 or value >= SNARK_FIELD_SIZE:
        raise ValueError(f"value {value} is not a field element")
    return value


def _poseidon(inputs: list[int]) -> int:
    hasher = _permutation(len(inputs) + 1)
    with _permutation_lock:
        hasher.run_hash([0] + [_check_field(v) for v in inputs])
        return int(hasher.state[0])


def hash_left_right(left: int, right: int) -> int:
    """Hash two nodes together. Order matters: left child first."""
    return _poseidon([left, right])


def hash5(values: Iterable[int]) -> int:
    """Hash up to five field elements; missing inputs are zero."""
    items = list(values)
    if len(items) > 5:
        raise ValueError(f"hash5 takes at most 5 inputs, got {len(items)}")
    items.extend([0] * (5 - len(items)))
    return _poseidon(items)


SMT_ZERO_LEAF = hash_left_right(0, 0)
SMT_ONE_LEAF = hash_left_right(1, 0)
