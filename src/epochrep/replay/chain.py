"""Chain event source — reads the contract's event channels through web3.

Each event kind is its own log channel; the Sequencer log records the
order they happened in. Channels are pulled from `start_block` onward and
decoded into model events. With a `page_size`, each channel is fetched
lazily in block ranges as the engine drains it.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterator, Optional

from epochrep.crypto.derivation import Identity
from epochrep.models.attestation import Attestation
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
from epochrep.replay.engine import ReplayEngine, ReplayResult
from epochrep.replay.oracle import ContractOracle

logger = logging.getLogger(__name__)

SEQUENCER_EVENT = "Sequencer"


def _decode_sign_up(args: Any) -> SignUpEvent:
    return SignUpEvent(epoch=int(args["_epoch"]), global_leaf=int(args["_hashedLeaf"]))


def _decode_attestation(args: Any) -> AttestationEvent:
    raw = args["attestation"]
    return AttestationEvent(
        epoch=int(args["_epoch"]),
        epoch_key=int(args["_epochKey"]),
        attestation=Attestation(
            attester_id=int(raw["attesterId"]),
            pos_rep=int(raw["posRep"]),
            neg_rep=int(raw["negRep"]),
            graffiti=int(raw["graffiti"]),
            overwrite_graffiti=bool(raw["overwriteGraffiti"]),
        ),
    )


def _decode_post(args: Any) -> PostRecordedEvent:
    return PostRecordedEvent(epoch=int(args["_epoch"]), epoch_key=int(args.get("_epochKey", 0)))


def _decode_comment(args: Any) -> CommentRecordedEvent:
    return CommentRecordedEvent(epoch=int(args["_epoch"]), epoch_key=int(args.get("_epochKey", 0)))


def _decode_karma(args: Any) -> KarmaNullifiersEvent:
    return KarmaNullifiersEvent(nullifiers=tuple(int(n) for n in args["karmaNullifiers"]))


def _decode_epoch_ended(args: Any) -> EpochSealedEvent:
    return EpochSealedEvent(epoch=int(args["_epoch"]))


def _decode_transition(args: Any) -> UserStateTransitionedEvent:
    data = args["userTransitionedData"]
    return UserStateTransitionedEvent(
        new_global_leaf=int(data["newGlobalStateTreeLeaf"]),
        attestation_nullifiers=tuple(int(n) for n in data["attestationNullifiers"]),
        epoch_key_nullifiers=tuple(int(n) for n in data["epkNullifiers"]),
        from_epoch=int(data["fromEpoch"]),
        from_global_state_root=int(data["fromGlobalStateTree"]),
        from_epoch_tree_root=int(data["fromEpochTree"]),
        proof=tuple(int(p) for p in data["proof"]),
    )


# Contract event name -> (channel, decoder).
CHANNELS: dict[str, tuple[EventKind, Callable[[Any], ContractEvent]]] = {
    "NewGSTLeafInserted": (EventKind.SIGN_UP, _decode_sign_up),
    "AttestationSubmitted": (EventKind.ATTESTATION, _decode_attestation),
    "PostSubmitted": (EventKind.POST_RECORDED, _decode_post),
    "CommentSubmitted": (EventKind.COMMENT_RECORDED, _decode_comment),
    "ReputationNullifierSubmitted": (EventKind.KARMA_NULLIFIERS_SUBMITTED, _decode_karma),
    "EpochEnded": (EventKind.EPOCH_SEALED, _decode_epoch_ended),
    "UserStateTransitioned": (EventKind.USER_STATE_TRANSITIONED, _decode_transition),
}

_missing_channels = set(EventKind) - {kind for kind, _ in CHANNELS.values()}
if _missing_channels:
    raise RuntimeError(f"EventKinds without a log channel: {sorted(_missing_channels)}")


class ChainEventSource:
    """Builds an EventStream from a deployed contract's logs.

    Usage:
        source = ChainEventSource(contract, start_block=1234)
        stream = source.stream()

    `contract` is a web3 contract object; only `contract.events.<Name>.get_logs`
    and `contract.w3.eth.block_number` (when paging) are used.
    """

    def __init__(
        self,
        contract: Any,
        start_block: int = 0,
        to_block: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> None:
        if start_block < 0:
            raise ValueError(f"start_block must be non-negative, got {start_block}")
        if page_size is not None and page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self._contract = contract
        self._start_block = start_block
        self._to_block = to_block
        self._page_size = page_size

    @property
    def start_block(self) -> int:
        return self._start_block

    def sequence(self) -> list[EventKind]:
        """Sequencer entries in chain order. Unknown tags raise SequenceFault."""
        return [parse_kind(str(log["args"]["_event"])) for log in self._logs(SEQUENCER_EVENT)]

    def channel(self, event_name: str) -> Iterator[ContractEvent]:
        _, decode = CHANNELS[event_name]
        for log in self._logs(event_name):
            yield decode(log["args"])

    def stream(self) -> EventStream:
        sequence = self.sequence()
        channels = {kind: self.channel(name) for name, (kind, _) in CHANNELS.items()}
        logger.info(
            "Read %d sequencer entries from block %d", len(sequence), self._start_block
        )
        return EventStream(sequence=sequence, channels=channels)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _logs(self, event_name: str) -> Iterator[Any]:
        event = getattr(self._contract.events, event_name)
        if self._page_size is None:
            logs = event.get_logs(from_block=self._start_block, to_block=self._to_block)
            yield from _chain_order(logs)
            return

        last = self._to_block
        if last is None:
            last = int(self._contract.w3.eth.block_number)
        page_start = self._start_block
        while page_start <= last:
            page_end = min(page_start + self._page_size - 1, last)
            logger.debug("Fetching %s logs for blocks %d-%d", event_name, page_start, page_end)
            yield from _chain_order(event.get_logs(from_block=page_start, to_block=page_end))
            page_start = page_end + 1


def _chain_order(logs: Any) -> list[Any]:
    return sorted(logs, key=lambda log: (int(log["blockNumber"]), int(log["logIndex"])))


def replay_chain(
    contract: Any,
    start_block: int,
    oracle: ContractOracle,
    params: ProtocolParams,
    identity: Optional[Identity] = None,
    cancel: Optional[threading.Event] = None,
    page_size: Optional[int] = None,
) -> ReplayResult:
    """Replay a deployed contract's full history into fresh observers."""
    source = ChainEventSource(contract, start_block, page_size=page_size)
    engine = ReplayEngine.fresh(params, oracle, identity=identity, cancel=cancel)
    return engine.replay(source.stream())
