"""Identity state — one identity's view of the replayed event log.

An IdentityState follows the same event stream as ProtocolState but only
changes when an event concerns its own identity:

- a sign-up whose leaf equals this identity's default global state leaf
- an attestation addressed to one of its epoch keys for the epoch it has
  most recently transitioned into
- a user-state transition whose epoch-key nullifiers are exactly the
  full set this identity owes for that epoch

Transition matching is all-or-nothing. Matching every required epoch-key
nullifier applies the transition; matching none means the event belongs
to someone else; matching only some is a ConsistencyFault.

Two reputation trees are kept. The working tree takes attestations as
they arrive. The committed tree is the one hashed into the identity's
latest global state leaf, and it only moves on an accepted transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from epochrep.crypto.derivation import (
    Identity,
    gen_attestation_nullifier,
    gen_epoch_key,
    gen_epoch_key_nullifier,
)
from epochrep.crypto.hashing import hash5
from epochrep.crypto.merkle import MerkleProof, SparseMerkleTree, reduce_to_depth
from epochrep.errors import ConsistencyFault, DuplicateNullifier
from epochrep.models.attestation import EMPTY_REPUTATION_LEAF, Attestation, ReputationRecord
from epochrep.models.events import UserStateTransitionedEvent
from epochrep.policy.resolver import ProtocolParams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionPlan:
    """A matched transition, checked but not yet applied."""
    from_epoch: int
    to_epoch: int
    new_global_leaf: int
    reputation_root: int
    pos_rep: int
    neg_rep: int
    nullifiers: frozenset[int]


class IdentityState:
    """Reputation and lifecycle of a single identity."""

    def __init__(self, identity: Identity, params: ProtocolParams) -> None:
        self._identity = identity
        self._params = params
        self._signed_up = False
        self._latest_transitioned_epoch = 0
        self._latest_global_leaf_index = 0
        # Reputation already folded into the latest global state leaf.
        self._transitioned_pos_rep = 0
        self._transitioned_neg_rep = 0
        # Reputation received during the latest transitioned epoch.
        self._epoch_pos_rep = 0
        self._epoch_neg_rep = 0
        self._records: dict[int, ReputationRecord] = {}
        self._committed_records: dict[int, ReputationRecord] = {}
        self._tree = self._new_reputation_tree()
        self._committed_tree = self._tree.copy()
        self._epoch_keys: dict[int, frozenset[int]] = {}
        self._pending_epoch_key_nullifiers: frozenset[int] = frozenset()
        self._seen_nullifiers: set[int] = set()
        self._transition_epochs: list[int] = []

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def empty_reputation_root(self) -> int:
        return self._new_reputation_tree().root

    def default_global_leaf(self) -> int:
        """Leaf a fresh sign-up of this identity inserts."""
        return hash5([
            self._identity.commitment,
            self.empty_reputation_root(),
            self._params.default_airdropped_karma,
            0,
            0,
        ])

    def global_leaf(self) -> int:
        """Leaf matching the committed reputation tree and karma totals."""
        return self._global_leaf_for(
            self._committed_tree.root,
            self._transitioned_pos_rep,
            self._transitioned_neg_rep,
        )

    def next_global_leaf(self) -> int:
        """Leaf the next transition must carry: working tree plus pending karma."""
        return self._global_leaf_for(
            self._tree.root,
            self._transitioned_pos_rep + self._epoch_pos_rep,
            self._transitioned_neg_rep + self._epoch_neg_rep,
        )

    def epoch_keys(self, epoch: int) -> frozenset[int]:
        keys = self._epoch_keys.get(epoch)
        if keys is None:
            keys = frozenset(
                gen_epoch_key(
                    self._identity.identity_nullifier, epoch, nonce,
                    self._params.epoch_tree_depth,
                )
                for nonce in range(self._params.num_epoch_key_nonce_per_epoch)
            )
            self._epoch_keys[epoch] = keys
        return keys

    def epoch_key_nullifiers(self, epoch: int) -> list[int]:
        """One nullifier per nonce slot, in nonce order."""
        return [
            gen_epoch_key_nullifier(
                self._identity.identity_nullifier, epoch, nonce,
                self._params.nullifier_tree_depth,
            )
            for nonce in range(self._params.num_epoch_key_nonce_per_epoch)
        ]

    def attestation_nullifier(self, attester_id: int, epoch: int) -> int:
        return gen_attestation_nullifier(
            self._identity.identity_nullifier, attester_id, epoch,
            self._params.nullifier_tree_depth,
        )

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def observe_sign_up(self, epoch: int, global_leaf: int, global_leaf_index: int) -> bool:
        """Check an observed sign-up leaf against this identity's default leaf."""
        if global_leaf != self.default_global_leaf():
            return False
        if self._signed_up:
            logger.warning(
                "Ignoring repeated sign-up leaf at index %d; identity already signed up",
                global_leaf_index,
            )
            return False
        self.sign_up(epoch, global_leaf_index)
        return True

    def sign_up(self, epoch: int, global_leaf_index: int) -> None:
        self._signed_up = True
        self._latest_transitioned_epoch = epoch
        self._latest_global_leaf_index = global_leaf_index
        logger.info("Identity signed up in epoch %d at leaf index %d", epoch, global_leaf_index)

    def observe_attestation(self, epoch: int, epoch_key: int, attestation: Attestation) -> bool:
        """Apply the attestation if it is addressed to one of our live epoch keys."""
        if not self._signed_up or epoch != self._latest_transitioned_epoch:
            return False
        if epoch_key not in self.epoch_keys(epoch):
            return False
        self.update_attestation(epoch_key, attestation)
        return True

    def update_attestation(self, epoch_key: int, attestation: Attestation) -> None:
        """Fold an attestation into its attester's record and reputation leaf."""
        attester_id = attestation.attester_id
        if not 0 <= attester_id < self._tree.capacity:
            raise ConsistencyFault(
                f"attester {attester_id} outside depth-{self._tree.depth} reputation tree"
            )
        record = self._records.get(attester_id, ReputationRecord()).apply(attestation)
        self._records[attester_id] = record
        self._tree.update(attester_id, record.hash())
        self._epoch_pos_rep += attestation.pos_rep
        self._epoch_neg_rep += attestation.neg_rep
        logger.debug("Epoch key %d received attestation from attester %d", epoch_key, attester_id)

    def observe_epoch_sealed(self, epoch: int) -> None:
        """Arm the epoch-key nullifiers owed for the epoch just sealed."""
        if self._signed_up and epoch == self._latest_transitioned_epoch:
            self._pending_epoch_key_nullifiers = frozenset(self.epoch_key_nullifiers(epoch))

    def match_transition(
        self,
        event: UserStateTransitionedEvent,
        to_epoch: int,
    ) -> Optional[TransitionPlan]:
        """Decide whether an accepted transition closes out this identity's epoch.

        Returns None when the event belongs to another identity. Raises
        DuplicateNullifier if it reuses a nullifier this identity already
        consumed, and ConsistencyFault on a partial match or when the
        event's new leaf disagrees with the recomputed one.
        """
        if not self._signed_up or event.from_epoch != self._latest_transitioned_epoch:
            return None
        if not self._pending_epoch_key_nullifiers:
            return None

        depth = self._params.nullifier_tree_depth
        reduced = [reduce_to_depth(n, depth) for n in event.all_nullifiers]
        for nullifier in reduced:
            if nullifier != 0 and nullifier in self._seen_nullifiers:
                raise DuplicateNullifier(nullifier)

        required = self._params.num_epoch_key_nonce_per_epoch
        matched = sum(
            1
            for n in event.epoch_key_nullifiers
            if reduce_to_depth(n, depth) in self._pending_epoch_key_nullifiers
        )
        if matched == 0:
            return None
        if matched != required:
            raise ConsistencyFault(
                f"Number of epoch key nullifiers matched {matched} not equal to "
                f"num_epoch_key_nonce_per_epoch {required}"
            )

        pos_rep = self._transitioned_pos_rep + self._epoch_pos_rep
        neg_rep = self._transitioned_neg_rep + self._epoch_neg_rep
        reputation_root = self._tree.root
        new_leaf = self.next_global_leaf()
        if new_leaf != event.new_global_leaf:
            raise ConsistencyFault(
                f"New global state leaf mismatch for transition from epoch {event.from_epoch}: "
                f"event carries {event.new_global_leaf}, recomputed {new_leaf}"
            )
        return TransitionPlan(
            from_epoch=event.from_epoch,
            to_epoch=to_epoch,
            new_global_leaf=new_leaf,
            reputation_root=reputation_root,
            pos_rep=pos_rep,
            neg_rep=neg_rep,
            nullifiers=frozenset(n for n in reduced if n != 0),
        )

    def commit_transition(self, plan: TransitionPlan, global_leaf_index: int) -> None:
        """Apply a matched transition once the protocol state has appended its leaf."""
        if plan.reputation_root != self._tree.root:
            raise ConsistencyFault("reputation tree changed between match and commit")
        self._latest_transitioned_epoch = plan.to_epoch
        self._latest_global_leaf_index = global_leaf_index
        self._transitioned_pos_rep = plan.pos_rep
        self._transitioned_neg_rep = plan.neg_rep
        self._epoch_pos_rep = 0
        self._epoch_neg_rep = 0
        self._committed_records = dict(self._records)
        self._committed_tree = self._tree.copy()
        self._seen_nullifiers |= plan.nullifiers
        self._pending_epoch_key_nullifiers = frozenset()
        self._transition_epochs.append(plan.from_epoch)
        logger.info(
            "Identity transitioned from epoch %d to %d at leaf index %d",
            plan.from_epoch, plan.to_epoch, global_leaf_index,
        )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def signed_up(self) -> bool:
        return self._signed_up

    @property
    def latest_transitioned_epoch(self) -> int:
        return self._latest_transitioned_epoch

    @property
    def latest_global_leaf_index(self) -> int:
        return self._latest_global_leaf_index

    @property
    def transition_history(self) -> list[int]:
        """Epochs this identity has transitioned out of, oldest first."""
        return list(self._transition_epochs)

    @property
    def reputation_root(self) -> int:
        """Root including attestations received since the last transition."""
        return self._tree.root

    @property
    def committed_reputation_root(self) -> int:
        """Root hashed into the identity's latest global state leaf."""
        return self._committed_tree.root

    @property
    def reputation_records(self) -> dict[int, ReputationRecord]:
        return dict(self._records)

    @property
    def committed_reputation_records(self) -> dict[int, ReputationRecord]:
        return dict(self._committed_records)

    @property
    def karma(self) -> tuple[int, int]:
        """(positive, negative) karma in the latest global state leaf."""
        return (
            self._params.default_airdropped_karma + self._transitioned_pos_rep,
            self._transitioned_neg_rep,
        )

    @property
    def pending_epoch_key_nullifiers(self) -> frozenset[int]:
        return self._pending_epoch_key_nullifiers

    def reputation_record(self, attester_id: int) -> ReputationRecord:
        return self._records.get(attester_id, ReputationRecord())

    def reputation_proof(self, attester_id: int, committed: bool = True) -> MerkleProof:
        tree = self._committed_tree if committed else self._tree
        return tree.proof(attester_id)

    def nullifier_seen(self, nullifier: int) -> bool:
        return reduce_to_depth(nullifier, self._params.nullifier_tree_depth) in self._seen_nullifiers

    # ------------------------------------------------------------------
    # Restore and persistence
    # ------------------------------------------------------------------

    @classmethod
    def restore(
        cls,
        identity: Identity,
        params: ProtocolParams,
        latest_transitioned_epoch: int,
        latest_global_leaf_index: int,
        records: Optional[dict[int, ReputationRecord]] = None,
        transitioned_pos_rep: int = 0,
        transitioned_neg_rep: int = 0,
    ) -> IdentityState:
        """Rebuild an already signed-up identity from known parameters.

        Used when the caller kept its own bookkeeping and does not want an
        identity-scoped replay from the first block.
        """
        state = cls(identity, params)
        state._signed_up = True
        state._latest_transitioned_epoch = latest_transitioned_epoch
        state._latest_global_leaf_index = latest_global_leaf_index
        state._transitioned_pos_rep = transitioned_pos_rep
        state._transitioned_neg_rep = transitioned_neg_rep
        for attester_id, record in (records or {}).items():
            state._records[attester_id] = record
            state._tree.update(attester_id, record.hash())
        state._committed_records = dict(state._records)
        state._committed_tree = state._tree.copy()
        return state

    def to_snapshot(self) -> dict:
        return {
            "signed_up": self._signed_up,
            "latest_transitioned_epoch": self._latest_transitioned_epoch,
            "latest_global_leaf_index": self._latest_global_leaf_index,
            "transitioned_pos_rep": self._transitioned_pos_rep,
            "transitioned_neg_rep": self._transitioned_neg_rep,
            "epoch_pos_rep": self._epoch_pos_rep,
            "epoch_neg_rep": self._epoch_neg_rep,
            "records": _records_to_dict(self._records),
            "committed_records": _records_to_dict(self._committed_records),
            "pending_epoch_key_nullifiers": sorted(
                str(n) for n in self._pending_epoch_key_nullifiers
            ),
            "seen_nullifiers": sorted(str(n) for n in self._seen_nullifiers),
            "transition_epochs": list(self._transition_epochs),
        }

    @classmethod
    def from_snapshot(cls, identity: Identity, params: ProtocolParams, data: dict) -> IdentityState:
        state = cls(identity, params)
        state._signed_up = bool(data["signed_up"])
        state._latest_transitioned_epoch = int(data["latest_transitioned_epoch"])
        state._latest_global_leaf_index = int(data["latest_global_leaf_index"])
        state._transitioned_pos_rep = int(data["transitioned_pos_rep"])
        state._transitioned_neg_rep = int(data["transitioned_neg_rep"])
        state._epoch_pos_rep = int(data["epoch_pos_rep"])
        state._epoch_neg_rep = int(data["epoch_neg_rep"])
        state._records = _records_from_dict(data["records"])
        state._committed_records = _records_from_dict(data["committed_records"])
        state._tree = state._tree_for(state._records)
        state._committed_tree = state._tree_for(state._committed_records)
        state._pending_epoch_key_nullifiers = frozenset(
            int(n) for n in data["pending_epoch_key_nullifiers"]
        )
        state._seen_nullifiers = {int(n) for n in data["seen_nullifiers"]}
        state._transition_epochs = [int(e) for e in data["transition_epochs"]]
        return state

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _new_reputation_tree(self) -> SparseMerkleTree:
        return SparseMerkleTree(self._params.user_state_tree_depth, EMPTY_REPUTATION_LEAF)

    def _tree_for(self, records: dict[int, ReputationRecord]) -> SparseMerkleTree:
        tree = self._new_reputation_tree()
        for attester_id, record in records.items():
            tree.update(attester_id, record.hash())
        return tree

    def _global_leaf_for(self, reputation_root: int, pos_rep: int, neg_rep: int) -> int:
        return hash5([
            self._identity.commitment,
            reputation_root,
            self._params.default_airdropped_karma + pos_rep,
            neg_rep,
            0,
        ])


def _records_to_dict(records: dict[int, ReputationRecord]) -> dict[str, dict]:
    return {str(attester_id): record.to_dict() for attester_id, record in sorted(records.items())}


def _records_from_dict(data: dict[str, dict]) -> dict[int, ReputationRecord]:
    return {int(k): ReputationRecord.from_dict(v) for k, v in data.items()}
