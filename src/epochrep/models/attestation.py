"""Attestation and reputation record models.

An attestation is a reputation delta issued by an attester to an epoch
key within the current epoch. It is immutable once recorded. A
reputation record is the running per-attester total an identity holds;
its hash is the identity's reputation-accumulator leaf for that attester.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from epochrep.crypto.hashing import hash5


@dataclass(frozen=True)
class Attestation:
    """A single reputation delta, as emitted by the contract."""
    attester_id: int
    pos_rep: int
    neg_rep: int
    graffiti: int = 0
    overwrite_graffiti: bool = False

    def hash(self) -> int:
        return hash5([
            self.attester_id,
            self.pos_rep,
            self.neg_rep,
            self.graffiti,
            int(self.overwrite_graffiti),
        ])

    def to_dict(self) -> dict[str, Any]:
        return {
            "attester_id": str(self.attester_id),
            "pos_rep": str(self.pos_rep),
            "neg_rep": str(self.neg_rep),
            "graffiti": str(self.graffiti),
            "overwrite_graffiti": self.overwrite_graffiti,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Attestation:
        return Attestation(
            attester_id=to_int(data["attester_id"]),
            pos_rep=to_int(data["pos_rep"]),
            neg_rep=to_int(data["neg_rep"]),
            graffiti=to_int(data.get("graffiti", 0)),
            overwrite_graffiti=bool(data.get("overwrite_graffiti", False)),
        )


@dataclass(frozen=True)
class ReputationRecord:
    """Accumulated reputation an identity holds from one attester."""
    pos_rep: int = 0
    neg_rep: int = 0
    graffiti: int = 0

    def apply(self, attestation: Attestation) -> ReputationRecord:
        """Return the record after folding in one attestation.

        Graffiti is replaced only when the attestation asks for it.
        """
        return replace(
            self,
            pos_rep=self.pos_rep + attestation.pos_rep,
            neg_rep=self.neg_rep + attestation.neg_rep,
            graffiti=attestation.graffiti if attestation.overwrite_graffiti else self.graffiti,
        )

    def hash(self) -> int:
        return hash5([self.pos_rep, self.neg_rep, self.graffiti])

    def to_dict(self) -> dict[str, str]:
        return {
            "pos_rep": str(self.pos_rep),
            "neg_rep": str(self.neg_rep),
            "graffiti": str(self.graffiti),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ReputationRecord:
        return ReputationRecord(
            pos_rep=to_int(data["pos_rep"]),
            neg_rep=to_int(data["neg_rep"]),
            graffiti=to_int(data.get("graffiti", 0)),
        )


# Leaf of every reputation-accumulator address that has never been written.
EMPTY_REPUTATION_LEAF = ReputationRecord().hash()


def to_int(value: Any) -> int:
    """Parse an int from JSON/ABI output: int, decimal string or 0x-hex string."""
    if isinstance(value, bool):
        raise TypeError(f"expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 0)
    return int(value)
