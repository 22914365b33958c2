"""Data models — attestations, reputation records, contract events."""

from epochrep.models.attestation import Attestation, ReputationRecord
from epochrep.models.events import (
    AttestationEvent,
    CommentRecordedEvent,
    EpochSealedEvent,
    EpochTreeLeaf,
    EventKind,
    EventStream,
    KarmaNullifiersEvent,
    PostRecordedEvent,
    SignUpEvent,
    UserStateTransitionedEvent,
)

__all__ = [
    "Attestation",
    "ReputationRecord",
    "AttestationEvent",
    "CommentRecordedEvent",
    "EpochSealedEvent",
    "EpochTreeLeaf",
    "EventKind",
    "EventStream",
    "KarmaNullifiersEvent",
    "PostRecordedEvent",
    "SignUpEvent",
    "UserStateTransitionedEvent",
]
