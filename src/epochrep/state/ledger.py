"""Attestation ledger — per-epoch, per-epoch-key running hashchains.

Each attestation's hash is folded into its epoch key's chain in arrival
order: chain = hash_left_right(attestation_hash, chain), starting from 0.
At epoch end every chain is terminated with the end marker,
hash_left_right(1, chain), which is the epoch-tree leaf for that key.

The ledger only ever holds the open epoch. Sealing hands back the sealed
leaves and the owner starts a fresh ledger for the next epoch.
"""

from __future__ import annotations

from epochrep.crypto.hashing import HASHCHAIN_END_MARKER, hash_left_right
from epochrep.errors import ConsistencyFault
from epochrep.models.attestation import Attestation


def fold_hashchain(attestations: list[Attestation]) -> int:
    """Unsealed chain value over attestations in arrival order."""
    chain = 0
    for attestation in attestations:
        chain = hash_left_right(attestation.hash(), chain)
    return chain


def seal_hashchain(chain: int) -> int:
    return hash_left_right(HASHCHAIN_END_MARKER, chain)


class AttestationLedger:
    """Hashchains for the open epoch."""

    def __init__(self, epoch: int, max_attestations_per_key: int) -> None:
        self._epoch = epoch
        self._max_per_key = max_attestations_per_key
        self._chains: dict[int, int] = {}
        self._attestations: dict[int, list[Attestation]] = {}

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def epoch_keys(self) -> list[int]:
        return list(self._chains)

    def record(self, epoch_key: int, attestation: Attestation) -> int:
        """Fold an attestation into its key's chain. Returns the new chain value."""
        received = self._attestations.setdefault(epoch_key, [])
        if len(received) >= self._max_per_key:
            raise ConsistencyFault(
                f"epoch key {epoch_key} exceeds {self._max_per_key} attestations "
                f"in epoch {self._epoch}"
            )
        received.append(attestation)
        chain = hash_left_right(attestation.hash(), self._chains.get(epoch_key, 0))
        self._chains[epoch_key] = chain
        return chain

    def hashchain(self, epoch_key: int) -> int:
        return self._chains.get(epoch_key, 0)

    def attestations(self, epoch_key: int) -> list[Attestation]:
        return list(self._attestations.get(epoch_key, []))

    def seal(self) -> dict[int, int]:
        """Terminated chains, keyed by epoch key."""
        return {key: seal_hashchain(chain) for key, chain in self._chains.items()}

    def to_snapshot(self) -> dict:
        return {
            "epoch": self._epoch,
            "attestations": {
                str(key): [a.to_dict() for a in items]
                for key, items in self._attestations.items()
            },
        }

    @staticmethod
    def from_snapshot(data: dict, max_attestations_per_key: int) -> AttestationLedger:
        ledger = AttestationLedger(int(data["epoch"]), max_attestations_per_key)
        for key, items in data["attestations"].items():
            for item in items:
                ledger.record(int(key), Attestation.from_dict(item))
        return ledger
