#!/usr/bin/env python3
"""epochrep invariant checks against the shipped protocol parameters."""

import json
import sys
from pathlib import Path
from typing import Optional


ROOT = Path(__file__).resolve().parents[1]
PARAMS_FILENAME = "protocol_params.json"

TREE_DEPTHS = (
    "global_state_tree_depth",
    "user_state_tree_depth",
    "epoch_tree_depth",
    "nullifier_tree_depth",
)
COUNTS = (
    "num_epoch_key_nonce_per_epoch",
    "num_attestations_per_epoch_key",
    "default_airdropped_karma",
)

# Tree indices and leaves must stay below the 254-bit field.
MAX_TREE_DEPTH = 252
# Reduced nullifiers below this depth collide too easily to mean "spent".
MIN_NULLIFIER_TREE_DEPTH = 64


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_integers(params: dict, errors: list[str]) -> None:
    for name in TREE_DEPTHS + COUNTS:
        if name not in params:
            errors.append(f"missing parameter: {name}")
            continue
        value = params[name]
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{name} must be an integer, got {value!r}")
    for name in sorted(set(params) - set(TREE_DEPTHS + COUNTS)):
        errors.append(f"unknown parameter: {name}")


def check(config_dir: Optional[Path] = None) -> int:
    params = load_json((config_dir or ROOT / "config") / PARAMS_FILENAME)
    errors: list[str] = []

    check_integers(params, errors)
    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    # --- Tree depth invariants ---
    for name in TREE_DEPTHS:
        if not 1 <= params[name] <= MAX_TREE_DEPTH:
            errors.append(f"{name} must be in [1, {MAX_TREE_DEPTH}], got {params[name]}")
    if params["nullifier_tree_depth"] < MIN_NULLIFIER_TREE_DEPTH:
        errors.append(
            f"nullifier_tree_depth must be >= {MIN_NULLIFIER_TREE_DEPTH}, "
            f"got {params['nullifier_tree_depth']}"
        )
    if params["global_state_tree_depth"] < 2:
        errors.append("global_state_tree_depth must hold at least a sign-up and a transition")

    # --- Epoch key invariants ---
    nonces = params["num_epoch_key_nonce_per_epoch"]
    if nonces < 1:
        errors.append(f"num_epoch_key_nonce_per_epoch must be >= 1, got {nonces}")
    elif params["epoch_tree_depth"] <= MAX_TREE_DEPTH and nonces > 2 ** params["epoch_tree_depth"]:
        errors.append("num_epoch_key_nonce_per_epoch exceeds the epoch tree address space")
    if params["num_attestations_per_epoch_key"] < 1:
        errors.append(
            "num_attestations_per_epoch_key must be >= 1, "
            f"got {params['num_attestations_per_epoch_key']}"
        )

    # --- Karma invariants ---
    if params["default_airdropped_karma"] < 0:
        errors.append(
            f"default_airdropped_karma must be >= 0, got {params['default_airdropped_karma']}"
        )

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check(Path(sys.argv[1]) if len(sys.argv) > 1 else None))
