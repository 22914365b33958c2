"""Snapshot store — persists a successfully replayed replica.

A snapshot is keyed by the contract address and the block the replay
started from. It holds the replay checkpoint, the protocol state and,
for identity-scoped replays, the identity's state (never its secret).
Resuming means loading the snapshot and replaying only the events past
its checkpoint.

Only the result of a completed replay can be saved: a replay that
raised never produces a ReplayResult.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from epochrep.crypto.derivation import Identity
from epochrep.policy.resolver import ProtocolParams
from epochrep.replay.engine import Checkpoint, ReplayResult
from epochrep.state.identity_state import IdentityState
from epochrep.state.protocol_state import ProtocolState

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


@dataclass(frozen=True)
class SnapshotKey:
    """Which deployment, replayed from which block."""
    contract_address: str
    start_block: int

    @staticmethod
    def of(contract_address: str, start_block: int) -> SnapshotKey:
        if start_block < 0:
            raise ValueError(f"start_block must be non-negative, got {start_block}")
        return SnapshotKey(contract_address.strip().lower(), int(start_block))


@dataclass
class LoadedSnapshot:
    """Observers rebuilt from disk, ready to resume from `checkpoint`."""
    key: SnapshotKey
    checkpoint: Checkpoint
    protocol: ProtocolState
    identity: Optional[IdentityState]
    written_utc: str


class SnapshotStore:
    """One JSON snapshot file.

    Usage:
        store = SnapshotStore(Path("replica.json"))
        store.save(SnapshotKey.of(address, 1234), result)
        loaded = store.load(SnapshotKey.of(address, 1234), params, identity)
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def save(self, key: SnapshotKey, result: ReplayResult) -> None:
        identity = None
        if result.identity is not None:
            identity = {
                "commitment": str(result.identity.identity.commitment),
                "state": result.identity.to_snapshot(),
            }
        document = {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "contract_address": key.contract_address,
            "start_block": key.start_block,
            "written_utc": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "params": result.protocol.params.to_dict(),
            "checkpoint": result.checkpoint.to_dict(),
            "roots": result.protocol.roots(),
            "protocol": result.protocol.to_snapshot(),
            "identity": identity,
        }
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._path)
        logger.info(
            "Saved snapshot for %s at position %d", key.contract_address, result.checkpoint.position
        )

    def read(self) -> dict[str, Any]:
        """Raw snapshot document, after a format version check."""
        document = json.loads(self._path.read_text(encoding="utf-8"))
        version = document.get("format_version")
        if version != SNAPSHOT_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported snapshot format {version!r} "
                f"(expected {SNAPSHOT_FORMAT_VERSION})"
            )
        return document

    def load(
        self,
        key: SnapshotKey,
        params: ProtocolParams,
        identity: Optional[Identity] = None,
    ) -> LoadedSnapshot:
        """Rebuild observers from the snapshot.

        Fail-closed on a different contract or start block, different
        protocol parameters, or an identity the snapshot was not taken for.
        """
        document = self.read()
        stored = SnapshotKey(document["contract_address"], int(document["start_block"]))
        if stored != key:
            raise ValueError(
                f"Snapshot is for {stored.contract_address} from block {stored.start_block}, "
                f"not {key.contract_address} from block {key.start_block}"
            )
        stored_params = ProtocolParams.from_dict(document["params"])
        if stored_params != params:
            raise ValueError("Snapshot was taken with different protocol parameters")

        identity_state = None
        if identity is not None:
            stored_identity = document.get("identity")
            if stored_identity is None:
                raise ValueError("Snapshot carries no identity state")
            if int(stored_identity["commitment"]) != identity.commitment:
                raise ValueError("Snapshot identity state belongs to a different identity")
            identity_state = IdentityState.from_snapshot(
                identity, params, stored_identity["state"]
            )

        return LoadedSnapshot(
            key=stored,
            checkpoint=Checkpoint.from_dict(document["checkpoint"]),
            protocol=ProtocolState.from_snapshot(params, document["protocol"]),
            identity=identity_state,
            written_utc=document["written_utc"],
        )
