"""Command line entry point for atlasguard.

Usage::

    atlasguard repair --config CONFIG.toml
    atlasguard auto-exclude --config CONFIG.toml \\
        [--channels DAPI [CHANNEL ...]] [--mode {single,max}] \\
        [--threshold-multiplier 1.0] [--resolution-level 4]
    atlasguard export --config CONFIG.toml [--detection-channels CHANNEL ...] [--force]
    atlasguard list --config CONFIG.toml
    atlasguard restore MARKER_ID --objects OBJECTS.geojson
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from atlasguard.interfaces.shared import add_auto_exclusion_args, add_cli_args, load_config
from atlasguard.interfaces.utils import _parse_log_level

LOGGER = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atlasguard",
        description=(
            "Keep the exclusions of brain atlas regions consistent, exclude empty regions "
            "automatically and export per-region results."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    repair = subparsers.add_parser("repair", help="Repair regions wrongly classified as excluded.")
    add_cli_args(repair)

    auto = subparsers.add_parser("auto-exclude", help="Exclude regions with no signal in the given channels.")
    add_cli_args(auto)
    add_auto_exclusion_args(auto)

    export = subparsers.add_parser("export", help="Write per-region results and exclusion lists.")
    add_cli_args(export)

    listing = subparsers.add_parser("list", help="Report the exclusions stored for each image.")
    add_cli_args(listing)

    restore = subparsers.add_parser("restore", help="Undo one exclusion by removing its marker.")
    restore.add_argument("marker_id", help="Id of the exclusion marker, as listed in the reports.")
    restore.add_argument(
        "--objects",
        type=Path,
        required=True,
        help="GeoJSON object set holding the marker.",
    )
    restore.add_argument(
        "--log-level",
        default="INFO",
        help="Logging verbosity (e.g., INFO, DEBUG).",
    )
    return parser


def _run(args: argparse.Namespace) -> int:
    from atlasguard.interfaces import runner

    if args.command == "restore":
        return 0 if runner.restore(args.objects, args.marker_id) else 1

    config = load_config(args)
    logging.getLogger().setLevel(config.log_level)
    if not config.images:
        LOGGER.warning("No images configured. Nothing to do.")
        return 1
    LOGGER.info("Processing %d images, writing to %s", len(config.images), config.output_dir)

    if args.command == "repair":
        runner.run_repair(config)
    elif args.command == "auto-exclude":
        runner.run_auto_exclusion(config)
    elif args.command == "export":
        runner.run_export(config)
    elif args.command == "list":
        for report in runner.run_listing(config):
            print(f"{report.image_label}\t{report.marker_id}\t{report.region_name}\t{report.percentile_rank}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the atlasguard CLI."""
    argv = list(argv) if argv is not None else sys.argv[1:]

    # --- No arguments: print help and exit ---
    if not argv:
        _build_parser().print_help()
        return 1

    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=_parse_log_level(args.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        return _run(args)
    except Exception:
        LOGGER.exception("atlasguard %s failed", args.command)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
