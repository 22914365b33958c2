"""epochrep CLI — command-line interface for the replay engine.

Usage:
    python -m epochrep.cli replay --events events.jsonl --oracle-archive oracle.json
    python -m epochrep.cli replay --events events.jsonl --oracle-archive oracle.json \\
        --identity identity.json --snapshot replica.json --contract 0xabc... --start-block 0
    python -m epochrep.cli status --snapshot replica.json
    python -m epochrep.cli check-invariants
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from epochrep.crypto.derivation import Identity
from epochrep.errors import ReplayError
from epochrep.persistence.event_log import EventLog
from epochrep.persistence.snapshot_store import SnapshotKey, SnapshotStore
from epochrep.policy.resolver import ProtocolParams
from epochrep.replay.engine import ReplayEngine, ReplayResult
from epochrep.replay.oracle import ArchivedOracle


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"

logger = logging.getLogger(__name__)


def _load_params(args: argparse.Namespace, oracle: Optional[ArchivedOracle] = None) -> ProtocolParams:
    params = ProtocolParams.from_config_dir(args.config)
    params = ProtocolParams.from_env(base=params, env_file=args.env_file)
    if oracle is not None and oracle.has_tree_depths:
        params = ProtocolParams.from_oracle(oracle, base=params)
    return params


def _summary(result: ReplayResult) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "roots": result.protocol.roots(),
        "events_processed": result.events_processed,
        "checkpoint": result.checkpoint.to_dict(),
        "skipped": [
            {"position": s.position, "kind": s.kind.value, "error": s.error, "reason": s.reason}
            for s in result.skipped
        ],
    }
    if result.identity is not None:
        pos_rep, neg_rep = result.identity.karma
        summary["identity"] = {
            "latest_transitioned_epoch": result.identity.latest_transitioned_epoch,
            "latest_global_leaf_index": result.identity.latest_global_leaf_index,
            "reputation_root": str(result.identity.reputation_root),
            "karma": {"pos_rep": pos_rep, "neg_rep": neg_rep},
            "reputation": {
                str(attester): record.to_dict()
                for attester, record in sorted(result.identity.reputation_records.items())
            },
        }
    return summary


def cmd_replay(args: argparse.Namespace) -> int:
    if args.snapshot is not None and args.contract is None:
        print("--snapshot requires --contract", file=sys.stderr)
        return 1
    try:
        oracle = ArchivedOracle.from_file(args.oracle_archive)
        params = _load_params(args, oracle)
        stream = EventLog(storage_path=args.events).to_stream()
        identity = None
        if args.identity is not None:
            identity = Identity.from_dict(
                json.loads(args.identity.read_text(encoding="utf-8"))
            )

        store = key = loaded = None
        if args.snapshot is not None:
            store = SnapshotStore(args.snapshot)
            key = SnapshotKey.of(args.contract, args.start_block)
            if store.exists():
                loaded = store.load(key, params, identity)
    except (OSError, KeyError, ValueError) as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1

    if loaded is not None:
        logger.info("Resuming from snapshot at position %d", loaded.checkpoint.position)
        engine = ReplayEngine(oracle, loaded.protocol, loaded.identity)
        checkpoint = loaded.checkpoint
    else:
        engine = ReplayEngine.fresh(params, oracle, identity=identity)
        checkpoint = None

    try:
        result = engine.replay(stream, checkpoint=checkpoint)
    except ReplayError as exc:
        print(f"Replay failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 2

    if store is not None:
        store.save(key, result)
    print(json.dumps(_summary(result), indent=2))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    store = SnapshotStore(args.snapshot)
    if not store.exists():
        print(f"No snapshot at {args.snapshot}", file=sys.stderr)
        return 1
    try:
        document = store.read()
    except ValueError as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1
    status = {
        "contract_address": document["contract_address"],
        "start_block": document["start_block"],
        "written_utc": document["written_utc"],
        "checkpoint": document["checkpoint"],
        "roots": document["roots"],
        "identity_scoped": document["identity"] is not None,
    }
    print(json.dumps(status, indent=2))
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run parameter invariant checks against the config directory."""
    tools_dir = Path(__file__).resolve().parents[2] / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check
    return check(args.config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="epochrep",
        description="epochrep — off-chain replay of epoch reputation state",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Optional .env file with EPOCHREP_* parameter overrides",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command")

    # replay
    p_replay = sub.add_parser("replay", help="Replay a recorded event stream")
    p_replay.add_argument("--events", type=Path, required=True, help="Recorded events (JSONL)")
    p_replay.add_argument(
        "--oracle-archive", type=Path, required=True,
        help="Recorded contract answers (JSON)",
    )
    p_replay.add_argument("--identity", type=Path, help="Identity secret (JSON)")
    p_replay.add_argument("--snapshot", type=Path, help="Snapshot to resume from and update")
    p_replay.add_argument("--contract", help="Contract address the events came from")
    p_replay.add_argument(
        "--start-block", type=int, default=0,
        help="Block the event stream starts at (default: 0)",
    )

    # status
    p_status = sub.add_parser("status", help="Show a saved snapshot")
    p_status.add_argument("--snapshot", type=Path, required=True, help="Snapshot file")

    # check-invariants
    sub.add_parser("check-invariants", help="Run protocol parameter checks")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "replay": cmd_replay,
        "status": cmd_status,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
