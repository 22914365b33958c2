"""Cryptographic primitives — field hashing, Merkle accumulators, derivations."""

from epochrep.crypto.merkle import IncrementalMerkleTree, MerkleProof, SparseMerkleTree
from epochrep.crypto.derivation import Identity

__all__ = ["IncrementalMerkleTree", "MerkleProof", "SparseMerkleTree", "Identity"]
