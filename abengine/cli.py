"""
ABEngine Command Line Interface

Operates on a file-backed registry snapshot: list and report on
experiments, change their lifecycle state, and run a maintenance pass.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from abengine.config import EngineConfig
from abengine.errors import AbEngineError
from abengine.logging import setup_logging
from abengine.persistence.store import FileStore
from abengine.registry import ExperimentRegistry
from abengine.types import ExperimentStatus


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="abengine",
        description="ABEngine - A/B/n experimentation engine CLI",
    )
    parser.add_argument("--data-dir", default="abengine-data", help="Snapshot directory")
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    parser.add_argument("--log-level", default=None, help="Log level override")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    list_parser = subparsers.add_parser("list", help="List experiments")
    list_parser.add_argument(
        "--status",
        choices=[s.value for s in ExperimentStatus],
        default=None,
        help="Only show experiments in this state",
    )

    create_parser = subparsers.add_parser("create", help="Create an experiment from a JSON file")
    create_parser.add_argument("definition", type=Path, help="Experiment definition file")

    report_parser = subparsers.add_parser("report", help="Show an experiment report")
    report_parser.add_argument("experiment_id")
    report_parser.add_argument("--json", action="store_true", help="Print JSON instead of text")

    pause_parser = subparsers.add_parser("pause", help="Pause an experiment")
    pause_parser.add_argument("experiment_id")
    pause_parser.add_argument("--reason", default=None)

    resume_parser = subparsers.add_parser("resume", help="Resume a paused experiment")
    resume_parser.add_argument("experiment_id")

    stop_parser = subparsers.add_parser("stop", help="Complete an experiment")
    stop_parser.add_argument("experiment_id")
    stop_parser.add_argument("--declare-winner", action="store_true")

    subparsers.add_parser("maintain", help="Run one maintenance pass")

    return parser


def load_registry(args: argparse.Namespace) -> ExperimentRegistry:
    config = EngineConfig.from_file(args.config) if args.config else EngineConfig()
    setup_logging(args.log_level or config.log_level, json_output=False)
    registry = ExperimentRegistry(config, store=FileStore(args.data_dir))
    registry.load()
    return registry


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        registry = load_registry(args)
        code = dispatch(registry, args)
    except AbEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not registry.flush():
        print("Error: could not write snapshot", file=sys.stderr)
        return 1
    return code


def dispatch(registry: ExperimentRegistry, args: argparse.Namespace) -> int:
    if args.command == "list":
        return cmd_list(registry, args.status)
    if args.command == "create":
        return cmd_create(registry, args.definition)
    if args.command == "report":
        return cmd_report(registry, args.experiment_id, args.json)
    if args.command == "pause":
        return _outcome(registry.pause_experiment(args.experiment_id, args.reason), "paused", args.experiment_id)
    if args.command == "resume":
        return _outcome(registry.resume_experiment(args.experiment_id), "resumed", args.experiment_id)
    if args.command == "stop":
        ok = registry.stop_experiment(args.experiment_id, declare_winner=args.declare_winner)
        code = _outcome(ok, "stopped", args.experiment_id)
        if ok and args.declare_winner:
            print(f"Winner: {registry.get_experiment(args.experiment_id).winner or '-'}")
        return code
    if args.command == "maintain":
        print(json.dumps(registry.run_maintenance(), indent=2))
        return 0
    return 2


def cmd_list(registry: ExperimentRegistry, status: Optional[str]) -> int:
    experiments = registry.list_experiments(ExperimentStatus(status) if status else None)
    if not experiments:
        print("No experiments")
        return 0
    for exp in experiments:
        print(
            f"{exp.id}  {exp.status.value:<9}  sessions={exp.total_sessions:<7}  "
            f"winner={exp.winner or '-'}  {exp.name}"
        )
    return 0


def cmd_create(registry: ExperimentRegistry, definition: Path) -> int:
    with open(definition) as f:
        data = json.load(f)
    exp = registry.create_experiment(data)
    print(exp.id)
    return 0


def cmd_report(registry: ExperimentRegistry, experiment_id: str, as_json: bool) -> int:
    report = registry.get_report(experiment_id)
    if report is None:
        print(f"Experiment not found: {experiment_id}", file=sys.stderr)
        return 1
    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print(report.to_text())
    return 0


def _outcome(ok: bool, verb: str, experiment_id: str) -> int:
    if ok:
        print(f"Experiment {experiment_id} {verb}")
        return 0
    print(f"Experiment {experiment_id} could not be {verb}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
