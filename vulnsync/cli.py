"""Command-line entry points.

``vulnsync update`` synchronizes the local catalog with the NVD feeds;
``vulnsync match`` looks up one CPE in a catalog file.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from . import __version__
from .config import SyncSettings, find_settings, load_settings
from .cpe import parse_cpe
from .errors import CpeValidationError, SyncError
from .matching import find_vulnerabilities
from .store import CatalogStore
from .sync import build_controller

logger = logging.getLogger(__name__)


def _load_settings(path: Optional[Path]) -> SyncSettings:
    path = path or find_settings()
    if path is None:
        return SyncSettings()
    return load_settings(path)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_update(args: argparse.Namespace) -> int:
    try:
        settings = _load_settings(args.config)
    except (OSError, ValidationError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    controller = build_controller(settings)
    try:
        report = controller.run()
    except SyncError as e:
        print(f"Synchronization failed: {e}", file=sys.stderr)
        return 1

    if report.cancelled:
        print("Synchronization cancelled")
    elif not report.updated:
        print("Catalog is up to date")
    else:
        kind = "Rebuilt" if report.full_rebuild else "Updated"
        print(f"{kind} {len(report.updated)} source(s): {', '.join(report.updated)}")
        print(f"Imported {report.entries_imported} CVE entries using {report.pool_size} download slot(s)")
    return 0


def cmd_match(args: argparse.Namespace) -> int:
    try:
        target = parse_cpe(args.cpe)
    except CpeValidationError as e:
        print(f"Invalid CPE: {e}", file=sys.stderr)
        return 2

    catalog = args.catalog
    if catalog is None:
        try:
            catalog = _load_settings(args.config).catalog_file
        except (OSError, ValidationError, ValueError) as e:
            print(f"Invalid configuration: {e}", file=sys.stderr)
            return 2
    if not catalog.exists():
        print(f"Catalog not found: {catalog}", file=sys.stderr)
        return 2

    findings = find_vulnerabilities(CatalogStore(catalog), target)
    if not findings:
        print(f"No known vulnerabilities for {target}")
        return 0
    print(f"{len(findings)} vulnerabilit{'y' if len(findings) == 1 else 'ies'} for {target}:")
    for finding in findings:
        print(f"  {finding.cve_id}")
        for record in finding.records:
            print(f"    {record}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vulnsync", description="NVD feed synchronization and CPE matching")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    update = sub.add_parser("update", help="Synchronize the local catalog with the remote feeds")
    update.add_argument("--config", type=Path, default=None, help="Settings file (YAML or JSON)")
    update.set_defaults(func=cmd_update)

    match = sub.add_parser("match", help="List catalogued vulnerabilities affecting a CPE")
    match.add_argument("cpe", help="CPE 2.3 formatted string or CPE 2.2 URI")
    match.add_argument("--catalog", type=Path, default=None, help="Catalog JSON file")
    match.add_argument("--config", type=Path, default=None, help="Settings file used to locate the catalog")
    match.set_defaults(func=cmd_match)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
