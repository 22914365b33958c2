"""Merkle accumulators for deterministic root computation.

Two shapes are provided:

- SparseMerkleTree: fixed depth, every address starts at a default leaf,
  any address may be written. Used for the epoch, nullifier and
  reputation accumulators.
- IncrementalMerkleTree: fixed depth, leaves are appended at the next free
  index and never revisited. Used for the global state accumulator.

Both hash with hash_left_right (left child first) so their roots match the
contract's. Only written nodes are stored; empty subtrees resolve to
precomputed per-level default nodes.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from epochrep.crypto.hashing import hash_left_right


@lru_cache(maxsize=None)
def _default_nodes(depth: int, default_leaf: int) -> tuple[int, ...]:
    nodes = [default_leaf]
    for _ in range(depth):
        nodes.append(hash_left_right(nodes[-1], nodes[-1]))
    return tuple(nodes)


def reduce_to_depth(value: int, depth: int) -> int:
    """Reduce a value into the address space of a depth-`depth` tree."""
    return value % (1 << depth)


@dataclass(frozen=True)
class MerkleProof:
    """An inclusion proof for a single leaf.

    path_indices[i] is 0 when the node at level i is a left child
    (sibling on the right) and 1 when it is a right child.
    """
    leaf: int
    index: int
    path_elements: list[int]
    path_indices: list[int]
    root: int

    def verify(self) -> bool:
        """Recompute the root from the leaf and path."""
        node = self.leaf
        for sibling, position in zip(self.path_elements, self.path_indices):
            if position == 0:
                node = hash_left_right(node, sibling)
            else:
                node = hash_left_right(sibling, node)
        return node == self.root


class SparseMerkleTree:
    """A fixed-depth sparse Merkle tree with a constant default leaf.

    Usage:
        tree = SparseMerkleTree(depth=4, default_leaf=SMT_ZERO_LEAF)
        root = tree.update(5, value)
        proof = tree.proof(5)
        assert proof.verify()

    There is no delete: once written, a leaf is never reset to default.
    """

    def __init__(self, depth: int, default_leaf: int = 0) -> None:
        if depth < 1:
            raise ValueError(f"depth must be >= 1, got {depth}")
        self._depth = depth
        self._default_leaf = default_leaf
        self._default_nodes = _default_nodes(depth, default_leaf)
        # (level, index) -> node hash; level 0 holds leaves
        self._nodes: dict[tuple[int, int], int] = {}

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def capacity(self) -> int:
        return 1 << self._depth

    @property
    def default_leaf(self) -> int:
        return self._default_leaf

    @property
    def root(self) -> int:
        return self._node(self._depth, 0)

    def copy(self) -> SparseMerkleTree:
        clone = SparseMerkleTree.__new__(SparseMerkleTree)
        clone._depth = self._depth
        clone._default_leaf = self._default_leaf
        clone._default_nodes = self._default_nodes
        clone._nodes = dict(self._nodes)
        return clone

    def reduce(self, value: int) -> int:
        """Reduce a value into this tree's address space."""
        return reduce_to_depth(value, self._depth)

    def update(self, index: int, value: int) -> int:
        """Write a leaf and return the new root."""
        self._check_index(index)
        self._nodes[(0, index)] = value
        current = index
        for level in range(self._depth):
            parent = current // 2
            left = self._node(level, parent * 2)
            right = self._node(level, parent * 2 + 1)
            self._nodes[(level + 1, parent)] = hash_left_right(left, right)
            current = parent
        return self.root

    def get_leaf(self, index: int) -> int:
        self._check_index(index)
        return self._node(0, index)

    def is_written(self, index: int) -> bool:
        self._check_index(index)
        return (0, index) in self._nodes

    def written_leaves(self) -> dict[int, int]:
        """Every explicitly written leaf, by index."""
        return {
            index: value
            for (level, index), value in sorted(self._nodes.items())
            if level == 0
        }

    def proof(self, index: int) -> MerkleProof:
        """Sibling path from a leaf to the root."""
        self._check_index(index)
        path_elements: list[int] = []
        path_indices: list[int] = []
        current = index
        for level in range(self._depth):
            if current % 2 == 0:
                path_elements.append(self._node(level, current + 1))
                path_indices.append(0)
            else:
                path_elements.append(self._node(level, current - 1))
                path_indices.append(1)
            current //= 2
        return MerkleProof(
            leaf=self._node(0, index),
            index=index,
            path_elements=path_elements,
            path_indices=path_indices,
            root=self.root,
        )

    def _node(self, level: int, index: int) -> int:
        return self._nodes.get((level, index), self._default_nodes[level])

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.capacity:
            raise IndexError(
                f"index {index} outside address space of depth-{self._depth} tree"
            )


class IncrementalMerkleTree:
    """An append-only Merkle tree with next-free-index insertion.

    Leaves get strictly increasing indices starting at zero, one per
    insertion. Indices are never revisited or reused.
    """

    def __init__(self, depth: int, zero_value: int = 0) -> None:
        self._tree = SparseMerkleTree(depth, default_leaf=zero_value)
        self._leaves: list[int] = []

    @property
    def depth(self) -> int:
        return self._tree.depth

    @property
    def root(self) -> int:
        return self._tree.root

    @property
    def capacity(self) -> int:
        return self._tree.capacity

    @property
    def is_full(self) -> bool:
        return len(self._leaves) >= self._tree.capacity

    @property
    def next_index(self) -> int:
        return len(self._leaves)

    @property
    def leaves(self) -> list[int]:
        return list(self._leaves)

    def insert(self, leaf: int) -> int:
        """Append a leaf. Returns its index."""
        index = len(self._leaves)
        if index >= self._tree.capacity:
            raise OverflowError(
                f"depth-{self._tree.depth} tree is full ({index} leaves)"
            )
        self._tree.update(index, leaf)
        self._leaves.append(leaf)
        return index

    def proof(self, index: int) -> MerkleProof:
        if not 0 <= index < len(self._leaves):
            raise IndexError(f"no leaf inserted at index {index}")
        return self._tree.proof(index)
