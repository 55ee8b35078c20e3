# main.py
# SPDX-License-Identifier: MIT

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from ..core.config import ViewConfig, load_config_from_path
from ..core.controller import new_run_id
from ..core.log import configure_logging
from ..core.runner import preview_view, resolve_paths, run_view


def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level facetview CLI argument parser.

    Returns:
        argparse.ArgumentParser: Configured argument parser for the CLI.
    """
    parser = argparse.ArgumentParser(prog="facetview", description="Build and publish joined facet views")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g., DEBUG, INFO, WARNING); overrides logging.level from the config.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_p = subparsers.add_parser("run", help="Build and publish a view from a config file")
    run_p.add_argument("-c", "--config", required=True, help="Path to config file (TOML, JSON or YAML).")
    run_p.add_argument("--dataset-id", help="Override dataset.dataset_id.")
    run_p.add_argument("--attempt", type=int, help="Override dataset.attempt.")
    run_p.add_argument("--batch-max-size", type=int, help="Override pipeline.batch_max_size.")
    run_p.add_argument("--concurrency", type=int, help="Override pipeline.concurrency (0 = one per CPU).")
    run_p.add_argument("--sync-mode", action="store_true", help="Dispatch batches on the calling thread.")
    run_p.add_argument(
        "--dry-run",
        action="store_true",
        help="Load and join only; report counts without writing or publishing.",
    )

    paths_p = subparsers.add_parser("paths", help="Print the input, staging and destination paths")
    paths_p.add_argument("-c", "--config", required=True, help="Path to config file (TOML, JSON or YAML).")
    paths_p.add_argument("--dataset-id", help="Override dataset.dataset_id.")
    paths_p.add_argument("--attempt", type=int, help="Override dataset.attempt.")

    return parser


def _apply_overrides(cfg: ViewConfig, args: argparse.Namespace) -> None:
    """Apply CLI overrides to a config object in place."""
    if getattr(args, "dataset_id", None):
        cfg.dataset.dataset_id = args.dataset_id
    if getattr(args, "attempt", None) is not None:
        cfg.dataset.attempt = int(args.attempt)
    if getattr(args, "batch_max_size", None) is not None:
        cfg.pipeline.batch_max_size = int(args.batch_max_size)
    if getattr(args, "concurrency", None) is not None:
        cfg.pipeline.concurrency = int(args.concurrency)
    if getattr(args, "sync_mode", False):
        cfg.pipeline.sync_mode = True


def _dispatch(args: argparse.Namespace) -> int:
    """Run the selected subcommand and return its exit code."""
    cfg = load_config_from_path(args.config)
    _apply_overrides(cfg, args)

    if args.command == "paths":
        cfg.validate()
        print(json.dumps(resolve_paths(cfg, "<run-id>").as_dict(), indent=2))
        return 0

    if args.command == "run":
        if args.log_level:
            cfg.logging.level = args.log_level
        cfg.logging.apply()
        if args.dry_run:
            result = preview_view(cfg)
        else:
            result = run_view(cfg, run_id=new_run_id())
        print(json.dumps(result, indent=2, sort_keys=True))
        return 0

    print(f"Unknown command: {args.command}", file=sys.stderr)
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the facetview command-line interface.

    Args:
        argv (Sequence[str] | None): Optional list of argument strings to
            parse instead of ``sys.argv[1:]``. Primarily useful for tests.

    Returns:
        int: Process exit code, 0 on success and 1 on any failure.
    """
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(level=args.log_level or "INFO")
    try:
        return _dispatch(args)
    except Exception as exc:  # noqa: BLE001
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
