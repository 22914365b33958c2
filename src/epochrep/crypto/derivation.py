"""Deterministic per-identity derivations: epoch keys and nullifiers.

Every derived value is a hash5 over the identity secret and public
context, reduced into the address space of the tree it indexes. The
reduction is a plain modulus by 2**depth, the same rule
SparseMerkleTree.reduce applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from epochrep.crypto.hashing import hash5
from epochrep.crypto.merkle import reduce_to_depth


# Domain tags keep attestation and epoch-key nullifiers disjoint.
ATTESTATION_NULLIFIER_DOMAIN = 1
EPOCH_KEY_NULLIFIER_DOMAIN = 2


@dataclass(frozen=True)
class Identity:
    """An identity secret and its commitment.

    The commitment is generated outside this package; it is carried here
    only so the default global state leaf can be rebuilt.
    """
    identity_nullifier: int
    identity_trapdoor: int
    commitment: int

    def to_dict(self) -> dict[str, str]:
        return {
            "identity_nullifier": str(self.identity_nullifier),
            "identity_trapdoor": str(self.identity_trapdoor),
            "commitment": str(self.commitment),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Identity:
        return Identity(
            identity_nullifier=int(str(data["identity_nullifier"]), 0),
            identity_trapdoor=int(str(data["identity_trapdoor"]), 0),
            commitment=int(str(data["commitment"]), 0),
        )


def gen_epoch_key(identity_nullifier: int, epoch: int, nonce: int, epoch_tree_depth: int) -> int:
    return reduce_to_depth(hash5([identity_nullifier, epoch, nonce]), epoch_tree_depth)


def gen_attestation_nullifier(
    identity_nullifier: int,
    attester_id: int,
    epoch: int,
    nullifier_tree_depth: int,
) -> int:
    return reduce_to_depth(
        hash5([ATTESTATION_NULLIFIER_DOMAIN, identity_nullifier, attester_id, epoch]),
        nullifier_tree_depth,
    )


def gen_epoch_key_nullifier(
    identity_nullifier: int,
    epoch: int,
    nonce: int,
    nullifier_tree_depth: int,
) -> int:
    return reduce_to_depth(
        hash5([EPOCH_KEY_NULLIFIER_DOMAIN, identity_nullifier, epoch, nonce]),
        nullifier_tree_depth,
    )
