#!/usr/bin/env python3
"""
Command-line client for the node lifecycle reconciler.

Examples:
    nodectl status _Node_0 _Node_1
    nodectl deactivate _Node_0 --intent restart --yes
    nodectl watch --all --interval 5
"""

from __future__ import annotations

import sys
import time
import logging
import argparse
from typing import List, Optional

from nodectl import gate
from nodectl.config import load_config
from nodectl.errors import PreconditionFailed, ReconcilerError
from nodectl.reconciler import NodeReconciler, NodeView
from nodectl.state import DeactivationIntent

logger = logging.getLogger(__name__)

INTENTS = {
    "pause": DeactivationIntent.PAUSE,
    "restart": DeactivationIntent.RESTART,
    "remove-data": DeactivationIntent.REMOVE_DATA,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nodectl", description="Node lifecycle reconciler")
    parser.add_argument("--config", help="YAML config file (default: $NODECTL_CONFIG or ./nodectl.yaml)")
    parser.add_argument("--controller", help="Controller URL, e.g. http://localhost:19080")
    parser.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Poll nodes and print their state")
    status.add_argument("nodes", nargs="*")
    status.add_argument("--all", action="store_true", help="Discover every node on the controller")
    status.add_argument("--metrics", action="store_true", help="Also print load metrics")

    watch = sub.add_parser("watch", help="Poll repeatedly")
    watch.add_argument("nodes", nargs="*")
    watch.add_argument("--all", action="store_true")
    watch.add_argument("--interval", type=float, default=None)
    watch.add_argument("--rounds", type=int, default=0, help="Stop after N rounds (0 = forever)")

    activate = sub.add_parser("activate", help="Activate a node")
    activate.add_argument("node")

    deactivate = sub.add_parser("deactivate", help="Deactivate a node")
    deactivate.add_argument("node")
    deactivate.add_argument("--intent", choices=sorted(INTENTS), default="pause")
    deactivate.add_argument("--yes", action="store_true", help="Skip confirmation")

    remove = sub.add_parser("remove-state", help="Remove the state of a down node")
    remove.add_argument("node")
    remove.add_argument("--yes", action="store_true")

    restart = sub.add_parser("restart", help="Restart a node")
    restart.add_argument("node")
    restart.add_argument("--yes", action="store_true")

    return parser


def format_view(view: NodeView, metrics: bool = False) -> List[str]:
    snap = view.snapshot
    if snap is None:
        return [f"{view.name:<20} (no data)"]
    node = snap.node
    health = snap.health.aggregated_health_state.value if snap.health else "-"
    expected = view.expected.value if view.expected else "-"
    flag = " [stale]" if view.stale else ""
    lines = [
        f"{node.name:<20} {node.display_status:<16} {health:<8} {expected:<9} "
        f"UD={node.upgrade_domain:<3} FD={node.fault_domain:<8} up={node.up_time:<14} "
        f"actions={','.join(view.enabled_commands) or '-'}{flag}"
    ]
    if metrics and snap.load is not None:
        for metric in snap.load.metrics:
            kind = "system" if metric.is_system_metric else "user"
            capacity = f"{metric.node_capacity:g}" if metric.has_capacity else "-"
            lines.append(
                f"    {metric.name:<28} {kind:<6} load={metric.node_load:<10g} "
                f"capacity={capacity:<10} {metric.load_capacity_ratio_string}"
            )
    return lines


def _header() -> str:
    return f"{'Node':<20} {'Status':<16} {'Health':<8} {'Expected':<9} Details"


def _track(rec: NodeReconciler, nodes: List[str], discover: bool) -> None:
    for name in nodes:
        rec.track(name)
    if discover:
        rec.discover()


def _print_round(rec: NodeReconciler, metrics: bool = False) -> int:
    results = rec.poll_round()
    print(_header())
    print("=" * 120)
    for view in rec.views():
        for line in format_view(view, metrics=metrics):
            print(line)
    failures = [name for name, r in results.items() if isinstance(r, Exception)]
    for name in failures:
        print(f"! {name}: {results[name]}", file=sys.stderr)
    return 1 if failures else 0


def _confirm(label: str, node: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{label} node '{node}'? [y/N] ").strip().lower()
    return answer in ("y", "yes")


def _run_command(rec: NodeReconciler, args: argparse.Namespace) -> int:
    name = args.node
    if args.command == "activate":
        command = gate.ACTIVATE
    elif args.command == "deactivate":
        command = gate.DEACTIVATE_COMMANDS[INTENTS[args.intent]]
    elif args.command == "remove-state":
        command = gate.REMOVE_NODE_STATE
    else:
        command = gate.RESTART

    rec.track(name)
    rec.refresh(name).result()

    chosen = gate.COMMANDS[command]
    if chosen.requires_confirmation and not _confirm(chosen.label, name, getattr(args, "yes", False)):
        print("Aborted.")
        return 1

    rec.execute(name, command).result()
    print(f"{chosen.label} accepted for {name}")
    for line in format_view(rec.view(name)):
        print(line)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config, controller_url=args.controller, request_timeout_s=args.timeout)
    except ReconcilerError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    rec = NodeReconciler(config)
    try:
        if args.command == "status":
            _track(rec, args.nodes, args.all or config.discover)
            return _print_round(rec, metrics=args.metrics)

        if args.command == "watch":
            _track(rec, args.nodes, args.all or config.discover)
            interval = args.interval or config.poll_interval_s
            rounds = 0
            while True:
                _print_round(rec)
                rounds += 1
                if args.rounds and rounds >= args.rounds:
                    return 0
                time.sleep(interval)

        return _run_command(rec, args)
    except PreconditionFailed as e:
        print(f"Not allowed: {e.message}", file=sys.stderr)
        return 3
    except ReconcilerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        rec.shutdown(wait_for_tasks=False)


if __name__ == "__main__":
    sys.exit(main())
