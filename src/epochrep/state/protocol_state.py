"""Protocol state — the single replica of protocol-wide accumulators.

Owns:
- the current epoch counter (exactly one open epoch at a time)
- the attestation ledger of the open epoch
- the global state tree (append-only, one leaf per sign-up or transition)
- one sealed epoch tree per past epoch
- the nullifier tree (spent nullifiers, never cleared)

Every mutator asserts the event's epoch against the current epoch and
raises EpochMismatch otherwise. Epochs move Open(e) -> Sealed(e) and
Open(e + 1) on seal_epoch; a sealed epoch is never reopened.

This class never looks inside an identity's state.
"""

from __future__ import annotations

import logging
from typing import Iterable

from epochrep.crypto.hashing import SMT_ONE_LEAF, SMT_ZERO_LEAF
from epochrep.crypto.merkle import IncrementalMerkleTree, MerkleProof, SparseMerkleTree
from epochrep.errors import (
    ConsistencyFault,
    DuplicateNullifier,
    EpochMismatch,
    GlobalStateTreeFull,
)
from epochrep.models.attestation import Attestation
from epochrep.models.events import EpochTreeLeaf
from epochrep.policy.resolver import ProtocolParams
from epochrep.state.ledger import AttestationLedger

logger = logging.getLogger(__name__)


# Zero value of every unused global state tree slot.
GLOBAL_STATE_ZERO_LEAF = 0


class ProtocolState:
    """Protocol-wide state rebuilt from the event log.

    Usage:
        state = ProtocolState(params)
        index = state.sign_up(0, leaf)
        state.record_attestation(0, epoch_key, attestation)
        state.seal_epoch(0, leaves_from_contract)
        state.apply_user_state_transition(1, new_leaf, nullifiers)
    """

    def __init__(self, params: ProtocolParams) -> None:
        self._params = params
        self._current_epoch = 0
        self._ledger = AttestationLedger(0, params.num_attestations_per_epoch_key)
        self._global_state_tree = IncrementalMerkleTree(
            params.global_state_tree_depth, GLOBAL_STATE_ZERO_LEAF
        )
        self._global_state_roots: list[int] = [self._global_state_tree.root]
        self._epoch_trees: dict[int, SparseMerkleTree] = {}
        self._nullifier_tree = SparseMerkleTree(params.nullifier_tree_depth, SMT_ZERO_LEAF)
        # Slot 0 is permanently spent so zero can serve as a padding nullifier.
        self._nullifier_tree.update(0, SMT_ONE_LEAF)
        self._sign_up_count = 0
        self._transition_count = 0

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def sign_up(self, epoch: int, global_leaf: int) -> int:
        """Append a sign-up leaf. Returns its global state tree index."""
        self._require_current("Sign-up", epoch)
        self._require_global_capacity("Sign-up")
        index = self._append_global_leaf(global_leaf)
        self._sign_up_count += 1
        logger.info("Sign-up in epoch %d at global leaf index %d", epoch, index)
        return index

    def record_attestation(self, epoch: int, epoch_key: int, attestation: Attestation) -> None:
        """Fold an attestation into its epoch key's hashchain."""
        self._require_current("Attestation", epoch)
        self._check_epoch_key(epoch_key)
        self._ledger.record(epoch_key, attestation)

    def record_activity(self, what: str, epoch: int) -> None:
        """Ledger-only events (posts, comments): only the epoch is checked."""
        self._require_current(what, epoch)

    def record_karma_nullifiers(self, nullifiers: Iterable[int]) -> int:
        """Insert karma nullifiers. Already-present ones are skipped.

        Returns the number of nullifiers newly inserted.
        """
        inserted = 0
        for nullifier in nullifiers:
            reduced = self.reduce_nullifier(nullifier)
            if reduced == 0 or self._nullifier_tree.is_written(reduced):
                continue
            self._nullifier_tree.update(reduced, SMT_ONE_LEAF)
            inserted += 1
        return inserted

    def seal_epoch(self, epoch: int, epoch_tree_leaves: Iterable[EpochTreeLeaf]) -> int:
        """Seal the open epoch with the contract's epoch-tree leaves.

        The contract's leaves must agree exactly with the locally folded
        hashchains. Returns the sealed epoch tree's root.
        """
        self._require_current("Ended", epoch)

        reported: dict[int, int] = {}
        for leaf in epoch_tree_leaves:
            if leaf.epoch_key in reported:
                raise ConsistencyFault(
                    f"epoch {epoch}: epoch key {leaf.epoch_key} reported twice"
                )
            self._check_epoch_key(leaf.epoch_key)
            reported[leaf.epoch_key] = leaf.hashchain

        local = self._ledger.seal()
        if set(local) != set(reported):
            missing = sorted(set(local) - set(reported))
            unknown = sorted(set(reported) - set(local))
            raise ConsistencyFault(
                f"epoch {epoch}: epoch keys disagree with contract "
                f"(missing from contract: {missing}, never attested locally: {unknown})"
            )
        for epoch_key, hashchain in local.items():
            if reported[epoch_key] != hashchain:
                raise ConsistencyFault(
                    f"epoch {epoch}: sealed hashchain of epoch key {epoch_key} "
                    f"is {reported[epoch_key]} on chain, {hashchain} locally"
                )

        tree = SparseMerkleTree(self._params.epoch_tree_depth, SMT_ZERO_LEAF)
        for epoch_key, hashchain in reported.items():
            tree.update(epoch_key, hashchain)
        self._epoch_trees[epoch] = tree

        self._current_epoch = epoch + 1
        self._ledger = AttestationLedger(
            self._current_epoch, self._params.num_attestations_per_epoch_key
        )
        logger.info(
            "Sealed epoch %d with %d epoch keys; current epoch is now %d",
            epoch, len(reported), self._current_epoch,
        )
        return tree.root

    def check_nullifiers(self, nullifiers: Iterable[int]) -> list[int]:
        """Reduce nullifiers and reject any that are already spent.

        Zero is padding and is ignored. A nullifier repeated within the
        same batch counts as reuse. Returns the reduced, non-zero
        nullifiers. Raises DuplicateNullifier without mutating anything.
        """
        fresh: list[int] = []
        seen: set[int] = set()
        for nullifier in nullifiers:
            reduced = self.reduce_nullifier(nullifier)
            if reduced == 0:
                continue
            if reduced in seen or self._nullifier_tree.is_written(reduced):
                raise DuplicateNullifier(reduced)
            seen.add(reduced)
            fresh.append(reduced)
        return fresh

    def apply_user_state_transition(
        self,
        epoch: int,
        new_global_leaf: int,
        nullifiers: Iterable[int],
    ) -> int:
        """Spend the transition's nullifiers and append its new leaf.

        All-or-nothing: a DuplicateNullifier leaves every tree untouched.
        Returns the new leaf's global state tree index.
        """
        self._require_current("User state transition", epoch)
        fresh = self.check_nullifiers(nullifiers)
        self._require_global_capacity("User state transition")
        for nullifier in fresh:
            self._nullifier_tree.update(nullifier, SMT_ONE_LEAF)
        index = self._append_global_leaf(new_global_leaf)
        self._transition_count += 1
        return index

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def params(self) -> ProtocolParams:
        return self._params

    @property
    def current_epoch(self) -> int:
        return self._current_epoch

    @property
    def ledger(self) -> AttestationLedger:
        return self._ledger

    @property
    def global_state_root(self) -> int:
        return self._global_state_tree.root

    @property
    def global_state_leaves(self) -> list[int]:
        return self._global_state_tree.leaves

    @property
    def global_state_root_history(self) -> list[int]:
        """Every root the global state tree has had, oldest first."""
        return list(self._global_state_roots)

    @property
    def nullifier_tree_root(self) -> int:
        return self._nullifier_tree.root

    @property
    def sealed_epochs(self) -> list[int]:
        return sorted(self._epoch_trees)

    @property
    def sign_up_count(self) -> int:
        return self._sign_up_count

    @property
    def transition_count(self) -> int:
        return self._transition_count

    def reduce_nullifier(self, nullifier: int) -> int:
        return self._nullifier_tree.reduce(nullifier)

    def nullifier_exists(self, nullifier: int) -> bool:
        return self._nullifier_tree.is_written(self.reduce_nullifier(nullifier))

    def global_state_root_exists(self, root: int) -> bool:
        return root in self._global_state_roots

    def global_state_proof(self, index: int) -> MerkleProof:
        return self._global_state_tree.proof(index)

    def epoch_tree_root(self, epoch: int) -> int:
        return self._sealed_tree(epoch).root

    def epoch_tree_leaves(self, epoch: int) -> list[EpochTreeLeaf]:
        return [
            EpochTreeLeaf(epoch_key=key, hashchain=value)
            for key, value in self._sealed_tree(epoch).written_leaves().items()
        ]

    def epoch_tree_proof(self, epoch: int, epoch_key: int) -> MerkleProof:
        return self._sealed_tree(epoch).proof(epoch_key)

    def nullifier_proof(self, nullifier: int) -> MerkleProof:
        return self._nullifier_tree.proof(self.reduce_nullifier(nullifier))

    def roots(self) -> dict[str, object]:
        """Current accumulator roots, as strings for JSON output."""
        return {
            "current_epoch": self._current_epoch,
            "global_state_root": str(self.global_state_root),
            "global_state_leaves": self._global_state_tree.next_index,
            "nullifier_tree_root": str(self.nullifier_tree_root),
            "epoch_tree_roots": {
                str(epoch): str(tree.root) for epoch, tree in sorted(self._epoch_trees.items())
            },
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_snapshot(self) -> dict:
        return {
            "current_epoch": self._current_epoch,
            "global_state_leaves": [str(leaf) for leaf in self._global_state_tree.leaves],
            "epoch_trees": {
                str(epoch): {str(k): str(v) for k, v in tree.written_leaves().items()}
                for epoch, tree in sorted(self._epoch_trees.items())
            },
            "nullifiers": [
                str(index) for index in self._nullifier_tree.written_leaves() if index != 0
            ],
            "ledger": self._ledger.to_snapshot(),
            "sign_up_count": self._sign_up_count,
            "transition_count": self._transition_count,
        }

    @staticmethod
    def from_snapshot(params: ProtocolParams, data: dict) -> ProtocolState:
        state = ProtocolState(params)
        for leaf in data["global_state_leaves"]:
            state._append_global_leaf(int(leaf))
        for epoch, leaves in data["epoch_trees"].items():
            tree = SparseMerkleTree(params.epoch_tree_depth, SMT_ZERO_LEAF)
            for key, value in leaves.items():
                tree.update(int(key), int(value))
            state._epoch_trees[int(epoch)] = tree
        for nullifier in data["nullifiers"]:
            state._nullifier_tree.update(int(nullifier), SMT_ONE_LEAF)
        state._current_epoch = int(data["current_epoch"])
        state._ledger = AttestationLedger.from_snapshot(
            data["ledger"], params.num_attestations_per_epoch_key
        )
        if state._ledger.epoch != state._current_epoch:
            raise ValueError(
                f"snapshot ledger epoch {state._ledger.epoch} != "
                f"current epoch {state._current_epoch}"
            )
        state._sign_up_count = int(data.get("sign_up_count", 0))
        state._transition_count = int(data.get("transition_count", 0))
        return state

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _append_global_leaf(self, leaf: int) -> int:
        index = self._global_state_tree.insert(leaf)
        self._global_state_roots.append(self._global_state_tree.root)
        return index

    def _require_global_capacity(self, what: str) -> None:
        if self._global_state_tree.is_full:
            raise GlobalStateTreeFull(
                f"{what} needs a global state leaf but the depth-"
                f"{self._global_state_tree.depth} tree is full "
                f"({self._global_state_tree.capacity} leaves)"
            )

    def _require_current(self, what: str, epoch: int) -> None:
        if epoch != self._current_epoch:
            raise EpochMismatch(what, epoch, self._current_epoch)

    def _check_epoch_key(self, epoch_key: int) -> None:
        if not 0 <= epoch_key < (1 << self._params.epoch_tree_depth):
            raise ConsistencyFault(
                f"epoch key {epoch_key} outside depth-{self._params.epoch_tree_depth} "
                "epoch tree"
            )

    def _sealed_tree(self, epoch: int) -> SparseMerkleTree:
        tree = self._epoch_trees.get(epoch)
        if tree is None:
            raise KeyError(f"epoch {epoch} is not sealed")
        return tree
