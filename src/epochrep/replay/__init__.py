"""Replay — the engine, its contract oracle and the chain event source."""

from epochrep.replay.engine import Checkpoint, ReplayEngine, ReplayResult
from epochrep.replay.oracle import ArchivedOracle, ContractOracle, Web3ContractOracle

__all__ = [
    "Checkpoint",
    "ReplayEngine",
    "ReplayResult",
    "ArchivedOracle",
    "ContractOracle",
    "Web3ContractOracle",
]
