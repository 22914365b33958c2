"""Typed contract events and the sequencer stream.

The contract emits each event kind on its own log channel plus a
sequencer log that names, position by position, which kind happened
next. EventKind is the closed set of kinds; each kind has exactly one
payload dataclass, registered in EVENT_TYPES.

Wire tags that do not name a known kind are rejected while parsing, so
the replay engine never sees an unrecognized kind.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Union

from epochrep.errors import SequenceFault
from epochrep.models.attestation import Attestation, to_int


class EventKind(str, enum.Enum):
    """Classification of contract events."""
    SIGN_UP = "sign_up"
    ATTESTATION = "attestation"
    POST_RECORDED = "post_recorded"
    COMMENT_RECORDED = "comment_recorded"
    KARMA_NULLIFIERS_SUBMITTED = "karma_nullifiers_submitted"
    EPOCH_SEALED = "epoch_sealed"
    USER_STATE_TRANSITIONED = "user_state_transitioned"


# Sequencer tags as the contract writes them.
SEQUENCER_TAGS: dict[str, EventKind] = {
    "UserSignUp": EventKind.SIGN_UP,
    "AttestationSubmitted": EventKind.ATTESTATION,
    "PostSubmitted": EventKind.POST_RECORDED,
    "CommentSubmitted": EventKind.COMMENT_RECORDED,
    "ReputationNullifierSubmitted": EventKind.KARMA_NULLIFIERS_SUBMITTED,
    "EpochEnded": EventKind.EPOCH_SEALED,
    "UserStateTransitioned": EventKind.USER_STATE_TRANSITIONED,
}


def parse_kind(tag: str) -> EventKind:
    """Resolve a sequencer tag (contract name or EventKind value)."""
    if tag in SEQUENCER_TAGS:
        return SEQUENCER_TAGS[tag]
    try:
        return EventKind(tag)
    except ValueError:
        raise SequenceFault(f"Unexpected event: {tag}") from None


def _ints(values: Iterable[Any]) -> tuple[int, ...]:
    return tuple(to_int(v) for v in values)


def _strs(values: Iterable[int]) -> list[str]:
    return [str(v) for v in values]


@dataclass(frozen=True)
class SignUpEvent:
    kind: ClassVar[EventKind] = EventKind.SIGN_UP

    epoch: int
    global_leaf: int

    def to_dict(self) -> dict[str, Any]:
        return {"epoch": self.epoch, "global_leaf": str(self.global_leaf)}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> SignUpEvent:
        return SignUpEvent(epoch=to_int(data["epoch"]), global_leaf=to_int(data["global_leaf"]))


@dataclass(frozen=True)
class AttestationEvent:
    kind: ClassVar[EventKind] = EventKind.ATTESTATION

    epoch: int
    epoch_key: int
    attestation: Attestation

    def to_dict(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "epoch_key": str(self.epoch_key),
            **self.attestation.to_dict(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> AttestationEvent:
        return AttestationEvent(
            epoch=to_int(data["epoch"]),
            epoch_key=to_int(data["epoch_key"]),
            attestation=Attestation.from_dict(data),
        )


@dataclass(frozen=True)
class PostRecordedEvent:
    """Ledger-only: consumed in order, never touches an accumulator."""
    kind: ClassVar[EventKind] = EventKind.POST_RECORDED

    epoch: int
    epoch_key: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"epoch": self.epoch, "epoch_key": str(self.epoch_key)}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PostRecordedEvent:
        return PostRecordedEvent(
            epoch=to_int(data["epoch"]),
            epoch_key=to_int(data.get("epoch_key", 0)),
        )


@dataclass(frozen=True)
class CommentRecordedEvent:
    """Ledger-only: consumed in order, never touches an accumulator."""
    kind: ClassVar[EventKind] = EventKind.COMMENT_RECORDED

    epoch: int
    epoch_key: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"epoch": self.epoch, "epoch_key": str(self.epoch_key)}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CommentRecordedEvent:
        return CommentRecordedEvent(
            epoch=to_int(data["epoch"]),
            epoch_key=to_int(data.get("epoch_key", 0)),
        )


@dataclass(frozen=True)
class KarmaNullifiersEvent:
    kind: ClassVar[EventKind] = EventKind.KARMA_NULLIFIERS_SUBMITTED

    nullifiers: tuple[int, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"nullifiers": _strs(self.nullifiers)}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> KarmaNullifiersEvent:
        return KarmaNullifiersEvent(nullifiers=_ints(data["nullifiers"]))


@dataclass(frozen=True)
class EpochSealedEvent:
    """The sealed epoch's leaves are fetched from the oracle, not carried here."""
    kind: ClassVar[EventKind] = EventKind.EPOCH_SEALED

    epoch: int

    def to_dict(self) -> dict[str, Any]:
        return {"epoch": self.epoch}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EpochSealedEvent:
        return EpochSealedEvent(epoch=to_int(data["epoch"]))


@dataclass(frozen=True)
class UserStateTransitionedEvent:
    """A proved user-state transition, as submitted on chain.

    The event carries its proof and public inputs verbatim; whether the
    proof holds is decided by the contract's verifier, never locally.
    """
    kind: ClassVar[EventKind] = EventKind.USER_STATE_TRANSITIONED

    new_global_leaf: int
    attestation_nullifiers: tuple[int, ...]
    epoch_key_nullifiers: tuple[int, ...]
    from_epoch: int
    from_global_state_root: int
    from_epoch_tree_root: int
    proof: tuple[int, ...] = ()

    @property
    def all_nullifiers(self) -> tuple[int, ...]:
        """Attestation nullifiers followed by epoch-key nullifiers."""
        return self.attestation_nullifiers + self.epoch_key_nullifiers

    def proof_digest(self) -> str:
        """SHA-256 over the canonical JSON of every proof input."""
        canonical = json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")
        return f"sha256:{hashlib.sha256(canonical).hexdigest()}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_global_leaf": str(self.new_global_leaf),
            "attestation_nullifiers": _strs(self.attestation_nullifiers),
            "epoch_key_nullifiers": _strs(self.epoch_key_nullifiers),
            "from_epoch": self.from_epoch,
            "from_global_state_root": str(self.from_global_state_root),
            "from_epoch_tree_root": str(self.from_epoch_tree_root),
            "proof": _strs(self.proof),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> UserStateTransitionedEvent:
        return UserStateTransitionedEvent(
            new_global_leaf=to_int(data["new_global_leaf"]),
            attestation_nullifiers=_ints(data["attestation_nullifiers"]),
            epoch_key_nullifiers=_ints(data["epoch_key_nullifiers"]),
            from_epoch=to_int(data["from_epoch"]),
            from_global_state_root=to_int(data["from_global_state_root"]),
            from_epoch_tree_root=to_int(data["from_epoch_tree_root"]),
            proof=_ints(data.get("proof", ())),
        )


ContractEvent = Union[
    SignUpEvent,
    AttestationEvent,
    PostRecordedEvent,
    CommentRecordedEvent,
    KarmaNullifiersEvent,
    EpochSealedEvent,
    UserStateTransitionedEvent,
]


EVENT_TYPES: dict[EventKind, type] = {
    EventKind.SIGN_UP: SignUpEvent,
    EventKind.ATTESTATION: AttestationEvent,
    EventKind.POST_RECORDED: PostRecordedEvent,
    EventKind.COMMENT_RECORDED: CommentRecordedEvent,
    EventKind.KARMA_NULLIFIERS_SUBMITTED: KarmaNullifiersEvent,
    EventKind.EPOCH_SEALED: EpochSealedEvent,
    EventKind.USER_STATE_TRANSITIONED: UserStateTransitionedEvent,
}

if set(EVENT_TYPES) != set(EventKind):
    raise RuntimeError(
        f"EventKinds without a payload type: {sorted(set(EventKind) - set(EVENT_TYPES))}"
    )


def event_from_dict(kind: EventKind, data: dict[str, Any]) -> ContractEvent:
    return EVENT_TYPES[kind].from_dict(data)


@dataclass(frozen=True)
class EpochTreeLeaf:
    """A sealed (epoch key, hashchain) pair as reported by the contract."""
    epoch_key: int
    hashchain: int


@dataclass
class EventStream:
    """The sequencer plus one channel per event kind.

    Channels may be any iterable (lists, or generators paging events
    from a node); the engine drains them in sequencer order.
    """
    sequence: list[EventKind]
    channels: dict[EventKind, Iterable[ContractEvent]] = field(default_factory=dict)

    @staticmethod
    def from_events(events: Iterable[ContractEvent]) -> EventStream:
        """Build a stream from events already in canonical order."""
        sequence: list[EventKind] = []
        channels: dict[EventKind, list[ContractEvent]] = {kind: [] for kind in EventKind}
        for event in events:
            sequence.append(event.kind)
            channels[event.kind].append(event)
        return EventStream(sequence=sequence, channels=dict(channels))
