"""Contract oracle — the read-only capability the replay engine consults.

The engine never verifies proofs and never recomputes sealed epoch
leaves on its own authority. It asks the contract. The oracle is an
explicit handle passed to the engine at construction; there is no
process-wide contract object.

Two implementations:

- Web3ContractOracle: calls a deployed contract through web3.
- ArchivedOracle: answers from recorded data (offline replays, tests).
  Unknown proofs are rejected.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from epochrep.models.attestation import to_int
from epochrep.models.events import EpochTreeLeaf, UserStateTransitionedEvent

logger = logging.getLogger(__name__)


class ContractOracle(Protocol):
    def tree_depths(self) -> dict[str, int]: ...
    def num_epoch_key_nonce_per_epoch(self) -> int: ...
    def num_attestations_per_epoch_key(self) -> int: ...
    def epoch_tree_leaves(self, epoch: int) -> list[EpochTreeLeaf]: ...
    def verify_user_state_transition(self, event: UserStateTransitionedEvent) -> bool: ...


class ArchivedOracle:
    """Oracle answering from recorded contract responses.

    Usage:
        oracle = ArchivedOracle(tree_depths={...})
        oracle.record_epoch_leaves(0, [EpochTreeLeaf(key, chain)])
        oracle.record_verdict(event, True)
    """

    def __init__(
        self,
        tree_depths: Optional[dict[str, int]] = None,
        num_epoch_key_nonce_per_epoch: int = 2,
        num_attestations_per_epoch_key: int = 10,
    ) -> None:
        self._tree_depths = dict(tree_depths or {})
        self._nonces = num_epoch_key_nonce_per_epoch
        self._attestations_per_key = num_attestations_per_epoch_key
        self._epoch_leaves: dict[int, list[EpochTreeLeaf]] = {}
        self._verdicts: dict[str, bool] = {}

    def record_epoch_leaves(self, epoch: int, leaves: Iterable[EpochTreeLeaf]) -> None:
        self._epoch_leaves[epoch] = list(leaves)

    def record_verdict(self, event: UserStateTransitionedEvent, valid: bool) -> None:
        self._verdicts[event.proof_digest()] = valid

    @property
    def has_tree_depths(self) -> bool:
        return bool(self._tree_depths)

    def tree_depths(self) -> dict[str, int]:
        if not self._tree_depths:
            raise LookupError("archive carries no tree depths")
        return dict(self._tree_depths)

    def num_epoch_key_nonce_per_epoch(self) -> int:
        return self._nonces

    def num_attestations_per_epoch_key(self) -> int:
        return self._attestations_per_key

    def epoch_tree_leaves(self, epoch: int) -> list[EpochTreeLeaf]:
        # An epoch nobody attested in seals with no leaves.
        return list(self._epoch_leaves.get(epoch, []))

    def verify_user_state_transition(self, event: UserStateTransitionedEvent) -> bool:
        verdict = self._verdicts.get(event.proof_digest())
        if verdict is None:
            logger.warning("No recorded verdict for proof %s; rejecting", event.proof_digest())
            return False
        return verdict

    def to_dict(self) -> dict[str, Any]:
        return {
            "tree_depths": self._tree_depths,
            "num_epoch_key_nonce_per_epoch": self._nonces,
            "num_attestations_per_epoch_key": self._attestations_per_key,
            "epoch_leaves": {
                str(epoch): [[str(l.epoch_key), str(l.hashchain)] for l in leaves]
                for epoch, leaves in sorted(self._epoch_leaves.items())
            },
            "verdicts": dict(sorted(self._verdicts.items())),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ArchivedOracle:
        oracle = ArchivedOracle(
            tree_depths={k: int(v) for k, v in data.get("tree_depths", {}).items()},
            num_epoch_key_nonce_per_epoch=int(data.get("num_epoch_key_nonce_per_epoch", 2)),
            num_attestations_per_epoch_key=int(data.get("num_attestations_per_epoch_key", 10)),
        )
        for epoch, leaves in data.get("epoch_leaves", {}).items():
            oracle.record_epoch_leaves(
                int(epoch),
                [EpochTreeLeaf(epoch_key=to_int(k), hashchain=to_int(h)) for k, h in leaves],
            )
        oracle._verdicts = {k: bool(v) for k, v in data.get("verdicts", {}).items()}
        return oracle

    def save(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True), encoding="utf-8")

    @staticmethod
    def from_file(path: Path) -> ArchivedOracle:
        return ArchivedOracle.from_dict(json.loads(path.read_text(encoding="utf-8")))


class Web3ContractOracle:
    """Oracle backed by a deployed contract.

    `contract` is a web3 contract object (or anything exposing the same
    `functions.<name>(...).call()` surface).
    """

    def __init__(self, contract: Any) -> None:
        self._contract = contract

    @classmethod
    def from_rpc(cls, rpc_url: str, address: str, abi: list[dict[str, Any]]) -> Web3ContractOracle:
        from web3 import HTTPProvider, Web3

        w3 = Web3(HTTPProvider(rpc_url))
        contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        return cls(contract)

    @property
    def contract(self) -> Any:
        return self._contract

    def tree_depths(self) -> dict[str, int]:
        depths = self._contract.functions.treeDepths().call()
        # Struct returned as a tuple in declaration order.
        global_state, user_state, epoch, nullifier = (int(d) for d in depths[:4])
        return {
            "global_state_tree_depth": global_state,
            "user_state_tree_depth": user_state,
            "epoch_tree_depth": epoch,
            "nullifier_tree_depth": nullifier,
        }

    def num_epoch_key_nonce_per_epoch(self) -> int:
        return int(self._contract.functions.numEpochKeyNoncePerEpoch().call())

    def num_attestations_per_epoch_key(self) -> int:
        return int(self._contract.functions.numAttestationsPerEpochKey().call())

    def epoch_tree_leaves(self, epoch: int) -> list[EpochTreeLeaf]:
        epoch_keys, hashchains = self._contract.functions.getEpochTreeLeaves(epoch).call()
        if len(epoch_keys) != len(hashchains):
            raise ValueError(
                f"getEpochTreeLeaves({epoch}) returned {len(epoch_keys)} keys "
                f"and {len(hashchains)} hashchains"
            )
        return [
            EpochTreeLeaf(epoch_key=int(k), hashchain=int(h))
            for k, h in zip(epoch_keys, hashchains)
        ]

    def verify_user_state_transition(self, event: UserStateTransitionedEvent) -> bool:
        return bool(
            self._contract.functions.verifyUserStateTransition(
                event.new_global_leaf,
                list(event.attestation_nullifiers),
                list(event.epoch_key_nullifiers),
                event.from_epoch,
                event.from_global_state_root,
                event.from_epoch_tree_root,
                list(event.proof),
            ).call()
        )
