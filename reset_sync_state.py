#!/usr/bin/env python3
# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Full reset: delete every non-job appointment of every enabled technician in
a window, then clear the EventMap and DeltaState data rows (headers stay).

Outlook is never touched. The next sync run recreates everything.

Usage:
    python reset_sync_state.py [--dry-run | --execute] [--start ISO] [--end ISO] [--skip-clear] [--verbose]
"""

import argparse
import json
import logging
import sys

from services import build_services

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Purge ServiceTitan non-job appointments and reset sync state')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--dry-run', dest='dry_run', action='store_true', default=True,
                      help='Count what would be deleted without deleting (default)')
    mode.add_argument('--execute', dest='dry_run', action='store_false',
                      help='Delete appointments and clear the sync sheets')
    parser.add_argument('--start', help='startsOnOrAfter, ISO 8601')
    parser.add_argument('--end', help='startsOnOrBefore, ISO 8601')
    parser.add_argument('--skip-clear', action='store_true',
                        help='Keep EventMap and DeltaState rows')
    parser.add_argument('--verbose', action='store_true', help='Show detailed logging')
    return parser


def main(argv=None, services=None) -> int:
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.dry_run:
        logger.info("🧪 DRY RUN MODE - Nothing will be deleted or cleared")
    else:
        logger.warning("⚠️ EXECUTE MODE - Appointments in the window will be deleted")

    try:
        services = services or build_services(include_graph=False)
        result = services.cleanup.reset_sync_state(
            starts_on_or_after=args.start, starts_on_or_before=args.end,
            dry_run=args.dry_run, skip_clear=args.skip_clear,
        )
    except Exception as e:
        logger.error(f"❌ Reset failed: {e}")
        return 1

    print(json.dumps(result, indent=2))
    if result['purge']['errors']:
        logger.error(f"❌ Reset finished with {len(result['purge']['errors'])} error(s)")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
