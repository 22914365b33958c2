"""Tests for the replay engine — sequencing, fault handling and end-to-end scenarios."""

import threading

import pytest

from conftest import ALICE, BOB, ScenarioBuilder
from epochrep.crypto.hashing import HASHCHAIN_END_MARKER, hash_left_right
from epochrep.errors import (
    ConsistencyFault,
    DuplicateNullifier,
    EpochMismatch,
    GlobalStateTreeFull,
    IdentityNotSignedUp,
    ProofRejected,
    ReplayAborted,
    SequenceFault,
)
from epochrep.models.attestation import Attestation, ReputationRecord
from epochrep.models.events import (
    AttestationEvent,
    EpochSealedEvent,
    EpochTreeLeaf,
    EventKind,
    EventStream,
    EVENT_TYPES,
    SignUpEvent,
)
from epochrep.policy.resolver import ProtocolParams
from epochrep.replay.chain import CHANNELS
from epochrep.replay.engine import _HANDLERS, Checkpoint, EventQueue, ReplayEngine, ReplayResult
from epochrep.replay.oracle import ArchivedOracle


def replay(scenario: ScenarioBuilder, identity=None, stream=None, **kwargs) -> ReplayResult:
    engine = ReplayEngine.fresh(scenario.params, scenario.oracle, identity=identity, **kwargs)
    return engine.replay(stream if stream is not None else scenario.stream())


def through_epoch_zero(scenario: ScenarioBuilder) -> ScenarioBuilder:
    """Scenarios A-C: sign up, one attestation from attester 7, seal epoch 0."""
    scenario.sign_up(ALICE)
    scenario.attest(ALICE, 7, pos_rep=5)
    scenario.end_epoch()
    return scenario


class TestDispatchTables:
    def test_every_kind_has_a_handler_function(self) -> None:
        assert set(_HANDLERS) == set(EventKind)
        for handler in _HANDLERS.values():
            assert handler.__qualname__.startswith("ReplayEngine._on_")

    def test_every_kind_has_a_payload_and_channel(self) -> None:
        assert set(EVENT_TYPES) == set(EventKind)
        assert {kind for kind, _ in CHANNELS.values()} == set(EventKind)


class TestEventQueue:
    def test_fifo(self) -> None:
        events = [SignUpEvent(0, 1), SignUpEvent(0, 2)]
        queue = EventQueue(EventKind.SIGN_UP, events)
        assert queue.dequeue_or_fail() == events[0]
        assert queue.has_leftover()
        assert queue.dequeue_or_fail() == events[1]
        assert not queue.has_leftover()
        assert queue.taken == 2

    def test_empty_channel(self) -> None:
        queue = EventQueue(EventKind.EPOCH_SEALED, [])
        with pytest.raises(SequenceFault, match="missing epoch_sealed event"):
            queue.dequeue_or_fail()

    def test_wrong_kind_on_channel(self) -> None:
        queue = EventQueue(EventKind.SIGN_UP, [EpochSealedEvent(0)])
        with pytest.raises(SequenceFault, match="on the sign_up channel"):
            queue.dequeue_or_fail()

    def test_lazy_source(self) -> None:
        pulled = []

        def source():
            for leaf in (1, 2, 3):
                pulled.append(leaf)
                yield SignUpEvent(0, leaf)

        queue = EventQueue(EventKind.SIGN_UP, source())
        queue.dequeue_or_fail()
        assert pulled == [1]
        assert queue.has_leftover()
        assert queue.leftover_count() == 2


class TestScenarios:
    def test_a_sign_up(self, scenario: ScenarioBuilder) -> None:
        leaf = scenario.sign_up(ALICE).global_leaf
        result = replay(scenario, identity=ALICE)
        assert result.identity.signed_up
        assert result.identity.latest_global_leaf_index == 0
        assert result.identity.default_global_leaf() == leaf
        assert result.protocol.global_state_leaves == [leaf]

    def test_b_attestation(self, scenario: ScenarioBuilder) -> None:
        scenario.sign_up(ALICE)
        scenario.attest(ALICE, 7, pos_rep=5, neg_rep=0, graffiti=0, overwrite_graffiti=False)
        result = replay(scenario, identity=ALICE)
        assert result.identity.reputation_record(7) == ReputationRecord(5, 0, 0)

    def test_c_seal(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        result = replay(scenario, identity=ALICE)
        assert result.protocol.current_epoch == 1
        chain = hash_left_right(Attestation(7, 5, 0).hash(), 0)
        expected = EpochTreeLeaf(scenario.epoch_key(ALICE, epoch=0), hash_left_right(HASHCHAIN_END_MARKER, chain))
        assert result.protocol.epoch_tree_leaves(0) == [expected]

    def test_d_accepted_transition(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        event = scenario.transition(ALICE)
        result = replay(scenario, identity=ALICE)
        identity = result.identity
        assert identity.latest_transitioned_epoch == 1
        assert len(result.protocol.global_state_leaves) == 2
        assert result.protocol.global_state_leaves[1] == event.new_global_leaf
        assert identity.global_leaf() == event.new_global_leaf
        assert identity.latest_global_leaf_index == 1
        assert all(result.protocol.nullifier_exists(n) for n in event.all_nullifiers)
        assert result.skipped == []

    def test_e_rejected_transition(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        before = replay(scenario, identity=ALICE)
        event = scenario.transition(ALICE, valid=False)
        result = replay(scenario, identity=ALICE)
        assert result.identity.latest_transitioned_epoch == 0
        assert len(result.protocol.global_state_leaves) == 1
        assert result.protocol.roots() == before.protocol.roots()
        assert not any(result.protocol.nullifier_exists(n) for n in event.epoch_key_nullifiers)
        assert [(s.kind, s.error) for s in result.skipped] == [
            (EventKind.USER_STATE_TRANSITIONED, "ProofRejected"),
        ]


class TestProperties:
    def _busy(self, scenario: ScenarioBuilder) -> ScenarioBuilder:
        scenario.sign_up(ALICE)
        scenario.sign_up(BOB)
        scenario.attest(ALICE, 7, pos_rep=5)
        scenario.attest(BOB, 3, neg_rep=2, graffiti=9, overwrite_graffiti=True, nonce=1)
        scenario.post()
        scenario.comment()
        scenario.karma([123, 456])
        scenario.end_epoch()
        scenario.transition(BOB)
        scenario.transition(ALICE)
        scenario.attest(ALICE, 7, pos_rep=3)
        scenario.end_epoch()
        scenario.transition(ALICE)
        return scenario

    def test_idempotent_replay(self, scenario: ScenarioBuilder) -> None:
        self._busy(scenario)
        first = replay(scenario, identity=ALICE)
        second = replay(scenario, identity=ALICE)
        assert first.protocol.roots() == second.protocol.roots()
        assert first.identity.reputation_records == second.identity.reputation_records
        assert first.identity.reputation_root == second.identity.reputation_root

    def test_identity_views_share_protocol_roots(self, scenario: ScenarioBuilder) -> None:
        self._busy(scenario)
        alice = replay(scenario, identity=ALICE)
        bob = replay(scenario, identity=BOB)
        anonymous = replay(scenario)
        assert alice.protocol.roots() == bob.protocol.roots() == anonymous.protocol.roots()
        assert alice.identity.reputation_records == {7: ReputationRecord(8, 0, 0)}
        assert bob.identity.reputation_records == {3: ReputationRecord(0, 2, 9)}
        assert alice.identity.latest_transitioned_epoch == 2
        assert bob.identity.latest_transitioned_epoch == 1
        assert alice.identity.karma == (scenario.params.default_airdropped_karma + 8, 0)

    def test_nullifier_uniqueness(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        spent = scenario.transition(ALICE)
        before = replay(scenario, identity=ALICE)
        scenario.transition(
            ALICE,
            epoch_key_nullifiers=spent.epoch_key_nullifiers,
            attestation_nullifiers=(),
            accepted=False,
        )
        after = replay(scenario, identity=ALICE)
        assert after.protocol.roots() == before.protocol.roots()
        assert after.identity.global_leaf() == before.identity.global_leaf()
        assert [s.error for s in after.skipped] == ["DuplicateNullifier"]

    def test_monotonic_epoch(self, scenario: ScenarioBuilder) -> None:
        for _ in range(3):
            scenario.end_epoch()
        result = replay(scenario)
        assert result.protocol.sealed_epochs == [0, 1, 2]
        assert result.protocol.current_epoch == 3

    def test_repeated_seal_is_fatal(self, scenario: ScenarioBuilder) -> None:
        stream = EventStream.from_events([EpochSealedEvent(0), EpochSealedEvent(0)])
        with pytest.raises(EpochMismatch, match=r"Ended epoch \(0\) does not match current epoch \(1\)"):
            replay(scenario, stream=stream)

    def test_partial_match_is_fatal(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        own = scenario.shadow(ALICE).epoch_key_nullifiers(0)
        scenario.transition(ALICE, epoch_key_nullifiers=[own[0], 98765], accepted=False)
        with pytest.raises(ConsistencyFault, match="matched 1"):
            replay(scenario, identity=ALICE)
        # The protocol-wide view cannot tell whose nullifiers these are.
        assert len(replay(scenario).protocol.global_state_leaves) == 2

    def test_forged_leaf_is_fatal(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        scenario.transition(ALICE, new_global_leaf=42, accepted=False)
        with pytest.raises(ConsistencyFault, match="New global state leaf mismatch"):
            replay(scenario, identity=ALICE)


class TestFaults:
    def test_error_families(self) -> None:
        assert SequenceFault.fatal and ConsistencyFault.fatal and ReplayAborted.fatal
        assert not ProofRejected.fatal
        assert not DuplicateNullifier(5).fatal

    def test_global_state_tree_full_across_epochs(self) -> None:
        events = [SignUpEvent(0, 100 + i) for i in range(3)]
        events.append(EpochSealedEvent(0))
        events += [SignUpEvent(1, 200 + i) for i in range(2)]
        engine = ReplayEngine.fresh(ProtocolParams(global_state_tree_depth=2), ArchivedOracle())
        with pytest.raises(GlobalStateTreeFull):
            engine.replay(EventStream.from_events(events))

    def test_sequencer_names_empty_channel(self, scenario: ScenarioBuilder) -> None:
        stream = EventStream(sequence=[EventKind.SIGN_UP], channels={})
        with pytest.raises(SequenceFault, match="missing sign_up event"):
            replay(scenario, stream=stream)

    def test_unknown_sequencer_tag(self, scenario: ScenarioBuilder) -> None:
        stream = EventStream(sequence=["Airdrop"], channels={})
        with pytest.raises(SequenceFault, match="Unexpected event: Airdrop"):
            replay(scenario, stream=stream)

    def test_contract_tags_accepted(self, scenario: ScenarioBuilder) -> None:
        leaf = scenario.sign_up(ALICE).global_leaf
        stream = EventStream(
            sequence=["UserSignUp"],
            channels={EventKind.SIGN_UP: [SignUpEvent(0, leaf)]},
        )
        assert replay(scenario, identity=ALICE, stream=stream).identity.signed_up

    def test_leftover_events(self, scenario: ScenarioBuilder) -> None:
        stream = EventStream(
            sequence=[EventKind.SIGN_UP],
            channels={EventKind.SIGN_UP: [SignUpEvent(0, 1), SignUpEvent(0, 2)]},
        )
        with pytest.raises(SequenceFault, match="1 sign_up events left unprocessed"):
            replay(scenario, stream=stream)

    def test_channels_drained_in_sequencer_order(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        stream = scenario.stream()
        # Deliver channels as generators, in reverse kind order.
        channels = {
            kind: (event for event in stream.channels[kind])
            for kind in reversed(list(stream.channels))
        }
        result = replay(scenario, identity=ALICE, stream=EventStream(stream.sequence, channels))
        assert result.protocol.roots() == replay(scenario, identity=ALICE).protocol.roots()

    def test_attestation_epoch_mismatch(self, scenario: ScenarioBuilder) -> None:
        stream = EventStream.from_events([AttestationEvent(1, 5, Attestation(1, 1, 0))])
        with pytest.raises(EpochMismatch, match="Attestation epoch"):
            replay(scenario, stream=stream)

    def test_oracle_leaves_disagree(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        scenario.oracle.record_epoch_leaves(0, [EpochTreeLeaf(scenario.epoch_key(ALICE, epoch=0), 1)])
        with pytest.raises(ConsistencyFault):
            replay(scenario)

    def test_identity_never_signed_up(self, scenario: ScenarioBuilder) -> None:
        scenario.sign_up(ALICE)
        with pytest.raises(IdentityNotSignedUp):
            replay(scenario, identity=BOB)

    def test_cancellation(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ReplayAborted, match="position 0"):
            replay(scenario, cancel=cancel)

    def test_cancellation_at_event_boundary(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        cancel = threading.Event()

        class CancellingOracle(ArchivedOracle):
            def epoch_tree_leaves(self, epoch):
                cancel.set()
                return scenario.oracle.epoch_tree_leaves(epoch)

        scenario.post()
        engine = ReplayEngine.fresh(scenario.params, CancellingOracle(), cancel=cancel)
        with pytest.raises(ReplayAborted, match="position 3"):
            engine.replay(scenario.stream())
        # The seal itself completed before the abort.
        assert engine.protocol.current_epoch == 1

    def test_engine_is_single_use(self, scenario: ScenarioBuilder) -> None:
        engine = ReplayEngine.fresh(scenario.params, scenario.oracle)
        engine.replay(scenario.stream())
        with pytest.raises(RuntimeError):
            engine.replay(scenario.stream())


class TestCheckpoint:
    def test_resume_matches_full_replay(self, scenario: ScenarioBuilder) -> None:
        through_epoch_zero(scenario)
        partial = replay(scenario, identity=ALICE)
        assert partial.checkpoint.position == 3

        scenario.transition(ALICE)
        scenario.attest(ALICE, 2, pos_rep=1)
        scenario.end_epoch()

        resumed = ReplayEngine(scenario.oracle, partial.protocol, partial.identity).replay(
            scenario.stream(), checkpoint=partial.checkpoint,
        )
        full = replay(scenario, identity=ALICE)
        assert resumed.events_processed == 3
        assert resumed.protocol.roots() == full.protocol.roots()
        assert resumed.identity.reputation_root == full.identity.reputation_root
        assert resumed.checkpoint == full.checkpoint

    def test_checkpoint_round_trip(self) -> None:
        checkpoint = Checkpoint(
            position=3,
            consumed={EventKind.SIGN_UP: 1, EventKind.ATTESTATION: 1, EventKind.EPOCH_SEALED: 1},
        )
        assert Checkpoint.from_dict(checkpoint.to_dict()) == checkpoint

    def test_inconsistent_checkpoint(self) -> None:
        with pytest.raises(ValueError):
            Checkpoint.from_dict({"position": 2, "consumed": {"sign_up": 1}})
