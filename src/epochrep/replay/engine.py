"""Replay engine — rebuilds protocol and identity state from the event log.

The contract writes each event kind to its own log channel and, in a
separate sequencer log, the kind of every event in the order it happened.
The engine walks the sequencer and, for each entry, takes the next event
from the channel it names. Channels are drained strictly first-in,
first-out, so per-kind delivery order never matters, only the sequencer.

Fatal conditions (SequenceFault, EpochMismatch, ConsistencyFault,
GlobalStateTreeFull, ReplayAborted, IdentityNotSignedUp) propagate out
of replay(). The observers handed to the engine are then unusable and
must be discarded.
A rejected proof or a reused nullifier only skips that one event.

Replays are strictly sequential: one engine drives one ProtocolState
(and at most one IdentityState) one event at a time.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from epochrep.crypto.derivation import Identity
from epochrep.errors import (
    EpochMismatch,
    IdentityNotSignedUp,
    ProofRejected,
    RecoverableReplayError,
    ReplayAborted,
    SequenceFault,
)
from epochrep.models.events import (
    AttestationEvent,
    CommentRecordedEvent,
    ContractEvent,
    EpochSealedEvent,
    EventKind,
    EventStream,
    KarmaNullifiersEvent,
    PostRecordedEvent,
    SignUpEvent,
    UserStateTransitionedEvent,
    parse_kind,
)
from epochrep.policy.resolver import ProtocolParams
from epochrep.replay.oracle import ContractOracle
from epochrep.state.identity_state import IdentityState
from epochrep.state.protocol_state import ProtocolState

logger = logging.getLogger(__name__)


class EventQueue:
    """FIFO over one event channel.

    Items are pulled lazily from the underlying iterable, so a channel
    backed by a paging generator is buffered only as far as needed.
    """

    def __init__(self, kind: EventKind, items: Iterable[ContractEvent]) -> None:
        self._kind = kind
        self._source: Iterator[ContractEvent] = iter(items)
        self._buffer: deque[ContractEvent] = deque()
        self._taken = 0

    @property
    def kind(self) -> EventKind:
        return self._kind

    @property
    def taken(self) -> int:
        return self._taken

    def dequeue_or_fail(self) -> ContractEvent:
        if self._buffer:
            event = self._buffer.popleft()
        else:
            try:
                event = next(self._source)
            except StopIteration:
                raise SequenceFault(
                    f"Event sequence mismatch: missing {self._kind.value} event "
                    f"(channel exhausted after {self._taken})"
                ) from None
        if event.kind != self._kind:
            raise SequenceFault(
                f"{event.kind.value} event found on the {self._kind.value} channel"
            )
        self._taken += 1
        return event

    def skip(self, count: int) -> None:
        """Drop events already applied by an earlier, successful replay."""
        for _ in range(count):
            self.dequeue_or_fail()

    def has_leftover(self) -> bool:
        if self._buffer:
            return True
        for event in self._source:
            self._buffer.append(event)
            return True
        return False

    def leftover_count(self) -> int:
        self._buffer.extend(self._source)
        return len(self._buffer)


@dataclass(frozen=True)
class Checkpoint:
    """How far a successful replay got: sequencer position and per-channel counts."""
    position: int = 0
    consumed: dict[EventKind, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "consumed": {kind.value: n for kind, n in sorted(self.consumed.items())},
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Checkpoint:
        consumed = {EventKind(k): int(v) for k, v in data.get("consumed", {}).items()}
        checkpoint = Checkpoint(position=int(data["position"]), consumed=consumed)
        if sum(consumed.values()) != checkpoint.position:
            raise ValueError(
                f"checkpoint consumed {sum(consumed.values())} events "
                f"but claims position {checkpoint.position}"
            )
        return checkpoint


@dataclass(frozen=True)
class SkippedEvent:
    """A user-state transition dropped by a recoverable error."""
    position: int
    kind: EventKind
    error: str
    reason: str


@dataclass
class ReplayResult:
    """Outcome of a completed replay."""
    protocol: ProtocolState
    identity: Optional[IdentityState]
    checkpoint: Checkpoint
    events_processed: int
    skipped: list[SkippedEvent] = field(default_factory=list)


class ReplayEngine:
    """Feeds the canonical event sequence to the protocol and identity observers.

    Usage:
        engine = ReplayEngine.fresh(params, oracle, identity=my_identity)
        result = engine.replay(stream)
        result.protocol.global_state_root
        result.identity.reputation_records

    To resume, rebuild both observers from a saved snapshot and pass the
    snapshot's checkpoint to replay().
    """

    def __init__(
        self,
        oracle: ContractOracle,
        protocol: ProtocolState,
        identity: Optional[IdentityState] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self._oracle = oracle
        self._protocol = protocol
        self._identity = identity
        self._cancel = cancel
        self._used = False

    @classmethod
    def fresh(
        cls,
        params: ProtocolParams,
        oracle: ContractOracle,
        identity: Optional[Identity] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ReplayEngine:
        identity_state = IdentityState(identity, params) if identity is not None else None
        return cls(oracle, ProtocolState(params), identity_state, cancel)

    @property
    def protocol(self) -> ProtocolState:
        return self._protocol

    @property
    def identity(self) -> Optional[IdentityState]:
        return self._identity

    def replay(
        self,
        stream: EventStream,
        checkpoint: Optional[Checkpoint] = None,
    ) -> ReplayResult:
        """Apply every sequencer entry after `checkpoint`, in order."""
        if self._used:
            raise RuntimeError("ReplayEngine is single-use; build a new one from fresh state")
        self._used = True

        queues = {kind: EventQueue(kind, stream.channels.get(kind, ())) for kind in EventKind}
        start = 0
        if checkpoint is not None:
            start = checkpoint.position
            for kind, count in checkpoint.consumed.items():
                queues[kind].skip(count)

        skipped: list[SkippedEvent] = []
        sequence = stream.sequence
        for position in range(start, len(sequence)):
            if self._cancel is not None and self._cancel.is_set():
                raise ReplayAborted(f"Replay aborted at sequencer position {position}")
            kind = _as_kind(sequence[position])
            event = queues[kind].dequeue_or_fail()
            logger.debug("Position %d: %s", position, kind.value)
            try:
                _HANDLERS[kind](self, event)
            except RecoverableReplayError as exc:
                logger.warning(
                    "Skipping %s at position %d: %s", kind.value, position, exc
                )
                skipped.append(SkippedEvent(
                    position=position,
                    kind=kind,
                    error=type(exc).__name__,
                    reason=str(exc),
                ))

        leftovers = {kind: q.leftover_count() for kind, q in queues.items()}
        leftovers = {kind: n for kind, n in leftovers.items() if n}
        if leftovers:
            raise SequenceFault(
                "; ".join(
                    f"{n} {kind.value} events left unprocessed"
                    for kind, n in sorted(leftovers.items())
                )
            )
        if self._identity is not None and not self._identity.signed_up:
            raise IdentityNotSignedUp("User did not sign up")

        result = ReplayResult(
            protocol=self._protocol,
            identity=self._identity,
            checkpoint=Checkpoint(
                position=len(sequence),
                consumed={kind: q.taken for kind, q in queues.items() if q.taken},
            ),
            events_processed=len(sequence) - start,
            skipped=skipped,
        )
        logger.info(
            "Replayed %d events (%d skipped); current epoch %d",
            result.events_processed, len(skipped), self._protocol.current_epoch,
        )
        return result

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_sign_up(self, event: SignUpEvent) -> None:
        index = self._protocol.sign_up(event.epoch, event.global_leaf)
        if self._identity is not None:
            self._identity.observe_sign_up(event.epoch, event.global_leaf, index)

    def _on_attestation(self, event: AttestationEvent) -> None:
        self._protocol.record_attestation(event.epoch, event.epoch_key, event.attestation)
        if self._identity is not None:
            self._identity.observe_attestation(event.epoch, event.epoch_key, event.attestation)

    def _on_post_recorded(self, event: PostRecordedEvent) -> None:
        self._protocol.record_activity("Post", event.epoch)

    def _on_comment_recorded(self, event: CommentRecordedEvent) -> None:
        self._protocol.record_activity("Comment", event.epoch)

    def _on_karma_nullifiers(self, event: KarmaNullifiersEvent) -> None:
        self._protocol.record_karma_nullifiers(event.nullifiers)

    def _on_epoch_sealed(self, event: EpochSealedEvent) -> None:
        if event.epoch != self._protocol.current_epoch:
            raise EpochMismatch("Ended", event.epoch, self._protocol.current_epoch)
        leaves = self._oracle.epoch_tree_leaves(event.epoch)
        self._protocol.seal_epoch(event.epoch, leaves)
        if self._identity is not None:
            self._identity.observe_epoch_sealed(event.epoch)

    def _on_user_state_transition(self, event: UserStateTransitionedEvent) -> None:
        if not self._oracle.verify_user_state_transition(event):
            raise ProofRejected(
                f"Invalid user state transition proof from epoch {event.from_epoch}"
            )
        epoch = self._protocol.current_epoch
        self._protocol.check_nullifiers(event.all_nullifiers)
        plan = None
        if self._identity is not None:
            plan = self._identity.match_transition(event, to_epoch=epoch)
        index = self._protocol.apply_user_state_transition(
            epoch, event.new_global_leaf, event.all_nullifiers
        )
        if plan is not None:
            self._identity.commit_transition(plan, index)


# Exhaustive dispatch: every EventKind has exactly one handler.
_HANDLERS: dict[EventKind, Callable[[ReplayEngine, Any], None]] = {
    EventKind.SIGN_UP: ReplayEngine._on_sign_up,
    EventKind.ATTESTATION: ReplayEngine._on_attestation,
    EventKind.POST_RECORDED: ReplayEngine._on_post_recorded,
    EventKind.COMMENT_RECORDED: ReplayEngine._on_comment_recorded,
    EventKind.KARMA_NULLIFIERS_SUBMITTED: ReplayEngine._on_karma_nullifiers,
    EventKind.EPOCH_SEALED: ReplayEngine._on_epoch_sealed,
    EventKind.USER_STATE_TRANSITIONED: ReplayEngine._on_user_state_transition,
}

if set(_HANDLERS) != set(EventKind):
    raise RuntimeError(
        f"EventKinds without a replay handler: {sorted(set(EventKind) - set(_HANDLERS))}"
    )


def _as_kind(entry: Union[EventKind, str]) -> EventKind:
    if isinstance(entry, EventKind):
        return entry
    return parse_kind(entry)
