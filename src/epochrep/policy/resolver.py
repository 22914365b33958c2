"""Protocol parameters — tree depths, nonce counts, default karma.

A replica is only meaningful when its parameters match the contract's.
Parameters come from one of three places:

- config/protocol_params.json (shipped defaults, test fixtures)
- EPOCHREP_* environment variables, optionally loaded from a .env file
- the contract itself, through the oracle's read accessors
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


PARAMS_FILENAME = "protocol_params.json"
ENV_PREFIX = "EPOCHREP_"


@dataclass(frozen=True)
class ProtocolParams:
    """Contract-side parameters every accumulator is sized from."""
    # Holds every epoch's leaves; deeper than the contract's per-epoch tree.
    global_state_tree_depth: int = 32
    user_state_tree_depth: int = 4
    epoch_tree_depth: int = 32
    nullifier_tree_depth: int = 128
    num_epoch_key_nonce_per_epoch: int = 2
    num_attestations_per_epoch_key: int = 10
    default_airdropped_karma: int = 20

    def validate(self) -> list[str]:
        """Return a list of problems. Empty list means the parameters are usable."""
        errors: list[str] = []
        for name in (
            "global_state_tree_depth",
            "user_state_tree_depth",
            "epoch_tree_depth",
            "nullifier_tree_depth",
        ):
            value = getattr(self, name)
            if not 1 <= value <= 252:
                errors.append(f"{name} must be in [1, 252], got {value}")
        if self.num_epoch_key_nonce_per_epoch < 1:
            errors.append(
                "num_epoch_key_nonce_per_epoch must be >= 1, "
                f"got {self.num_epoch_key_nonce_per_epoch}"
            )
        if self.num_attestations_per_epoch_key < 1:
            errors.append(
                "num_attestations_per_epoch_key must be >= 1, "
                f"got {self.num_attestations_per_epoch_key}"
            )
        if self.default_airdropped_karma < 0:
            errors.append(
                f"default_airdropped_karma must be >= 0, got {self.default_airdropped_karma}"
            )
        return errors

    def require_valid(self) -> ProtocolParams:
        errors = self.validate()
        if errors:
            raise ValueError("Invalid protocol parameters: " + "; ".join(errors))
        return self

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ProtocolParams:
        known = {f.name for f in fields(ProtocolParams)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown protocol parameters: {sorted(unknown)}")
        return ProtocolParams(**{k: int(v) for k, v in data.items()}).require_valid()

    @staticmethod
    def from_config_dir(config_dir: Path) -> ProtocolParams:
        path = config_dir / PARAMS_FILENAME
        with path.open("r", encoding="utf-8") as handle:
            return ProtocolParams.from_dict(json.load(handle))

    @staticmethod
    def from_env(
        base: Optional[ProtocolParams] = None,
        env_file: Optional[Path] = None,
    ) -> ProtocolParams:
        """Apply EPOCHREP_<FIELD> overrides on top of `base`.

        If env_file is given it is loaded first; variables already set in
        the process environment win.
        """
        if env_file is not None:
            load_dotenv(env_file)
        params = base or ProtocolParams()
        overrides: dict[str, int] = {}
        for f in fields(ProtocolParams):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                overrides[f.name] = int(raw, 0)
        return replace(params, **overrides).require_valid()

    @staticmethod
    def from_oracle(oracle: Any, base: Optional[ProtocolParams] = None) -> ProtocolParams:
        """Take tree depths and per-epoch limits from the contract.

        The contract's global state tree depth sizes one epoch's tree;
        the replica indexes leaves across all epochs, so
        global_state_tree_depth is kept from `base`, as is
        default_airdropped_karma, which the contract does not expose.
        """
        depths = oracle.tree_depths()
        params = replace(
            base or ProtocolParams(),
            user_state_tree_depth=depths["user_state_tree_depth"],
            epoch_tree_depth=depths["epoch_tree_depth"],
            nullifier_tree_depth=depths["nullifier_tree_depth"],
            num_epoch_key_nonce_per_epoch=oracle.num_epoch_key_nonce_per_epoch(),
            num_attestations_per_epoch_key=oracle.num_attestations_per_epoch_key(),
        )
        return params.require_valid()
