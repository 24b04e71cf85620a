#!/usr/bin/env python3
# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Duplicate Appointment Cleanup Script

Removes duplicate sync-written non-job appointments ("Busy" / "Out of
Office" with the default placement flags) for every enabled technician.
Within a duplicate group, appointments referenced by the EventMap sheet
are kept; otherwise the lowest id is kept.

Usage:
    python cleanup_duplicates.py [--dry-run | --execute] [--start ISO] [--end ISO] [--verbose]

Options:
    --dry-run    Show what would be deleted without deleting (default)
    --execute    Actually delete the duplicates
    --start      startsOnOrAfter (default: start of the current week)
    --end        startsOnOrBefore (default: end of day 90 days from now)
    --verbose    Show detailed logging
"""

import argparse
import json
import logging
import sys

from services import build_services

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Remove duplicate ServiceTitan non-job appointments')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--dry-run', dest='dry_run', action='store_true', default=True,
                      help='Show what would be deleted without actually deleting (default)')
    mode.add_argument('--execute', dest='dry_run', action='store_false',
                      help='Delete the duplicates')
    parser.add_argument('--start', help='startsOnOrAfter, ISO 8601')
    parser.add_argument('--end', help='startsOnOrBefore, ISO 8601')
    parser.add_argument('--verbose', action='store_true', help='Show detailed logging')
    return parser


def main(argv=None, services=None) -> int:
    """Main function"""
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.dry_run:
        logger.info("🧪 DRY RUN MODE - No appointments will actually be deleted")

    try:
        services = services or build_services(include_graph=False)
        summary = services.cleanup.dedupe_appointments(
            starts_on_or_after=args.start, starts_on_or_before=args.end, dry_run=args.dry_run
        )
    except Exception as e:
        logger.error(f"❌ Cleanup failed: {e}")
        return 1

    print(json.dumps(summary, indent=2))
    if summary['errors']:
        logger.error(f"❌ Cleanup finished with {len(summary['errors'])} error(s)")
        return 1
    logger.info(f"✅ Cleanup finished: {summary['appointmentsToDelete']} duplicate(s) "
                f"{'found' if args.dry_run else 'removed'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
