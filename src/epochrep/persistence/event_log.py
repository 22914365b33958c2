"""Recorded event stream — an append-only JSONL copy of a contract's history.

Each line is one sequencer position: the event kind, its payload and a
SHA-256 hash over the canonical JSON of both. A recorded stream replays
exactly like the live chain, without a node.

Loading is fail-closed: a line whose hash does not match, whose position
is out of order, or whose payload does not decode stops the load.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from epochrep.errors import SequenceFault
from epochrep.models.events import (
    ContractEvent,
    EventKind,
    EventStream,
    event_from_dict,
    parse_kind,
)


def _record_hash(
    position: int,
    kind: str,
    payload: dict[str, Any],
    block_number: Optional[int],
) -> str:
    canonical = json.dumps(
        {
            "position": position,
            "kind": kind,
            "payload": payload,
            "block_number": block_number,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class RecordedEvent:
    """One sequencer position with its decoded payload."""
    position: int
    event: ContractEvent
    record_hash: str
    block_number: Optional[int] = None

    @property
    def kind(self) -> EventKind:
        return self.event.kind

    @staticmethod
    def create(
        position: int,
        event: ContractEvent,
        block_number: Optional[int] = None,
    ) -> RecordedEvent:
        return RecordedEvent(
            position=position,
            event=event,
            record_hash=_record_hash(
                position, event.kind.value, event.to_dict(), block_number
            ),
            block_number=block_number,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "kind": self.kind.value,
            "payload": self.event.to_dict(),
            "block_number": self.block_number,
            "record_hash": self.record_hash,
        }


class EventLog:
    """Append-only recorded event stream with optional file persistence.

    Usage:
        log = EventLog(Path("events.jsonl"))
        log.append(SignUpEvent(epoch=0, global_leaf=leaf))
        stream = log.to_stream()
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._records: list[RecordedEvent] = []
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(
        self,
        event: ContractEvent,
        block_number: Optional[int] = None,
    ) -> RecordedEvent:
        """Record the event at the next sequencer position."""
        if self._records and block_number is not None:
            previous = self._records[-1].block_number
            if previous is not None and block_number < previous:
                raise ValueError(
                    f"block {block_number} precedes block {previous} "
                    f"of position {self._records[-1].position}"
                )
        record = RecordedEvent.create(len(self._records), event, block_number)
        self._records.append(record)
        if self._storage_path:
            self._append_to_file(record)
        return record

    def extend(self, events: Iterable[ContractEvent]) -> int:
        count = 0
        for event in events:
            self.append(event)
            count += 1
        return count

    def records(self, kind: Optional[EventKind] = None) -> list[RecordedEvent]:
        if kind is None:
            return list(self._records)
        return [r for r in self._records if r.kind == kind]

    @property
    def count(self) -> int:
        return len(self._records)

    @property
    def last_record(self) -> Optional[RecordedEvent]:
        return self._records[-1] if self._records else None

    def to_stream(self) -> EventStream:
        return EventStream.from_events(r.event for r in self._records)

    def _append_to_file(self, record: RecordedEvent) -> None:
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load records from a JSONL file with integrity verification.

        Fail-closed: rejects tampered lines (hash mismatch), gaps or
        reordering in positions, and payloads that do not decode.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                position = int(data["position"])
                if position != len(self._records):
                    raise ValueError(
                        f"Out-of-order record (line {line_num}): position {position}, "
                        f"expected {len(self._records)}"
                    )

                expected_hash = _record_hash(
                    position, data["kind"], data["payload"], data.get("block_number")
                )
                if data["record_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): position {position} "
                        f"stored hash {data['record_hash']} != computed {expected_hash}"
                    )

                try:
                    kind = parse_kind(data["kind"])
                    event = event_from_dict(kind, data["payload"])
                except (SequenceFault, KeyError, TypeError, ValueError) as exc:
                    raise ValueError(
                        f"Undecodable record (line {line_num}): {exc}"
                    ) from exc

                self._records.append(RecordedEvent(
                    position=position,
                    event=event,
                    record_hash=data["record_hash"],
                    block_number=data.get("block_number"),
                ))
