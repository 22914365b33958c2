"""Shared fixtures: a scripted contract history with matching oracle answers."""

from __future__ import annotations

from typing import Optional, Sequence

import pytest

from epochrep.crypto.derivation import Identity, gen_epoch_key
from epochrep.models.attestation import Attestation
from epochrep.models.events import (
    AttestationEvent,
    CommentRecordedEvent,
    ContractEvent,
    EpochSealedEvent,
    EpochTreeLeaf,
    EventStream,
    KarmaNullifiersEvent,
    PostRecordedEvent,
    SignUpEvent,
    UserStateTransitionedEvent,
)
from epochrep.policy.resolver import ProtocolParams
from epochrep.replay.oracle import ArchivedOracle
from epochrep.state.identity_state import IdentityState
from epochrep.state.ledger import AttestationLedger


ALICE = Identity(identity_nullifier=1111, identity_trapdoor=2222, commitment=3333)
BOB = Identity(identity_nullifier=4444, identity_trapdoor=5555, commitment=6666)


class ScenarioBuilder:
    """Writes a contract history event by event.

    Alongside the events it records what the contract would answer:
    sealed epoch-tree leaves per epoch and a verdict per transition
    proof. A shadow IdentityState per participant supplies the leaves
    and nullifiers an honest prover would submit.
    """

    def __init__(self, params: ProtocolParams) -> None:
        self.params = params
        self.events: list[ContractEvent] = []
        self.oracle = ArchivedOracle(
            num_epoch_key_nonce_per_epoch=params.num_epoch_key_nonce_per_epoch,
            num_attestations_per_epoch_key=params.num_attestations_per_epoch_key,
        )
        self.epoch = 0
        self.global_leaves = 0
        self._ledger = AttestationLedger(0, params.num_attestations_per_epoch_key)
        self._shadows: dict[Identity, IdentityState] = {}
        self._attesters: dict[tuple[Identity, int], list[int]] = {}

    def shadow(self, identity: Identity) -> IdentityState:
        if identity not in self._shadows:
            self._shadows[identity] = IdentityState(identity, self.params)
        return self._shadows[identity]

    def epoch_key(self, identity: Identity, nonce: int = 0, epoch: Optional[int] = None) -> int:
        return gen_epoch_key(
            identity.identity_nullifier,
            self.epoch if epoch is None else epoch,
            nonce,
            self.params.epoch_tree_depth,
        )

    def sign_up(self, identity: Identity) -> SignUpEvent:
        shadow = self.shadow(identity)
        event = SignUpEvent(epoch=self.epoch, global_leaf=shadow.default_global_leaf())
        self.events.append(event)
        shadow.observe_sign_up(self.epoch, event.global_leaf, self.global_leaves)
        self.global_leaves += 1
        return event

    def attest(
        self,
        identity: Identity,
        attester_id: int,
        pos_rep: int = 0,
        neg_rep: int = 0,
        graffiti: int = 0,
        overwrite_graffiti: bool = False,
        nonce: int = 0,
    ) -> AttestationEvent:
        attestation = Attestation(attester_id, pos_rep, neg_rep, graffiti, overwrite_graffiti)
        event = self.attest_key(self.epoch_key(identity, nonce), attestation)
        self._attesters.setdefault((identity, self.epoch), []).append(attester_id)
        return event

    def attest_key(self, epoch_key: int, attestation: Attestation) -> AttestationEvent:
        event = AttestationEvent(epoch=self.epoch, epoch_key=epoch_key, attestation=attestation)
        self.events.append(event)
        self._ledger.record(epoch_key, attestation)
        for shadow in self._shadows.values():
            shadow.observe_attestation(self.epoch, epoch_key, attestation)
        return event

    def post(self) -> PostRecordedEvent:
        event = PostRecordedEvent(epoch=self.epoch)
        self.events.append(event)
        return event

    def comment(self) -> CommentRecordedEvent:
        event = CommentRecordedEvent(epoch=self.epoch)
        self.events.append(event)
        return event

    def karma(self, nullifiers: Sequence[int]) -> KarmaNullifiersEvent:
        event = KarmaNullifiersEvent(nullifiers=tuple(nullifiers))
        self.events.append(event)
        return event

    def end_epoch(self) -> EpochSealedEvent:
        sealed = self._ledger.seal()
        self.oracle.record_epoch_leaves(
            self.epoch, [EpochTreeLeaf(key, chain) for key, chain in sealed.items()]
        )
        event = EpochSealedEvent(epoch=self.epoch)
        self.events.append(event)
        for shadow in self._shadows.values():
            shadow.observe_epoch_sealed(self.epoch)
        self.epoch += 1
        self._ledger = AttestationLedger(self.epoch, self.params.num_attestations_per_epoch_key)
        return event

    def transition(
        self,
        identity: Identity,
        valid: bool = True,
        new_global_leaf: Optional[int] = None,
        epoch_key_nullifiers: Optional[Sequence[int]] = None,
        attestation_nullifiers: Optional[Sequence[int]] = None,
        accepted: Optional[bool] = None,
    ) -> UserStateTransitionedEvent:
        """Submit a transition for `identity`'s latest epoch.

        `accepted` says whether the replica is expected to apply it; it
        defaults to `valid`. Only accepted transitions move the shadow.
        """
        shadow = self.shadow(identity)
        from_epoch = shadow.latest_transitioned_epoch
        if epoch_key_nullifiers is None:
            epoch_key_nullifiers = shadow.epoch_key_nullifiers(from_epoch)
        if attestation_nullifiers is None:
            attestation_nullifiers = [
                shadow.attestation_nullifier(attester, from_epoch)
                for attester in sorted(set(self._attesters.get((identity, from_epoch), [])))
            ]
        event = UserStateTransitionedEvent(
            new_global_leaf=(
                shadow.next_global_leaf() if new_global_leaf is None else new_global_leaf
            ),
            attestation_nullifiers=tuple(attestation_nullifiers),
            epoch_key_nullifiers=tuple(epoch_key_nullifiers),
            from_epoch=from_epoch,
            from_global_state_root=0,
            from_epoch_tree_root=0,
            # Position makes every proof, and so every verdict key, distinct.
            proof=(len(self.events), from_epoch),
        )
        self.events.append(event)
        self.oracle.record_verdict(event, valid)
        apply = valid if accepted is None else accepted
        if apply:
            plan = shadow.match_transition(event, to_epoch=self.epoch)
            if plan is not None:
                shadow.commit_transition(plan, self.global_leaves)
            self.global_leaves += 1
        return event

    def stream(self) -> EventStream:
        return EventStream.from_events(self.events)


@pytest.fixture
def params() -> ProtocolParams:
    return ProtocolParams()


@pytest.fixture
def scenario(params: ProtocolParams) -> ScenarioBuilder:
    return ScenarioBuilder(params)
