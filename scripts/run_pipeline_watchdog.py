#!/usr/bin/env python3
"""Run one pipeline watchdog sweep by hand.

The deployed ``pipeline-watchdog`` function runs on a schedule; this script
does the same sweep from a workstation, or just lists what it would touch.

Examples:
    # Show stale and resumable jobs without changing anything
    python scripts/run_pipeline_watchdog.py --dry-run

    # Sweep with a shorter staleness threshold
    python scripts/run_pipeline_watchdog.py --stale-after 300
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging
from src.functions.mailbox_pipeline.core.orchestration.runtime import PipelineRuntime

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Resurrect stalled pipeline jobs")
    parser.add_argument(
        "--stale-after",
        type=int,
        help="Consider jobs stale after this many seconds without a heartbeat (default: PIPELINE_STALE_THRESHOLD_SECONDS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be resurrected or resumed without doing it",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    load_env()
    setup_logging(level="DEBUG" if args.verbose else "INFO")

    overrides = {"stale_threshold_seconds": args.stale_after} if args.stale_after else None
    try:
        runtime = PipelineRuntime.from_env(overrides)
    except (ConfigurationError, ValueError) as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    threshold = runtime.config.stale_threshold_seconds
    logger.info("=" * 60)
    logger.info("PIPELINE WATCHDOG")
    logger.info("=" * 60)
    logger.info("Stale after: %ss", threshold)
    logger.info("Max retries: %s", runtime.config.max_retries)
    logger.info("Dry run: %s", args.dry_run)
    logger.info("=" * 60)

    if args.dry_run:
        stale = runtime.jobs.list_stale_jobs(threshold)
        paused = runtime.jobs.list_resumable_paused_jobs()
        for job in stale:
            action = "fail" if job.retry_count + 1 > runtime.config.max_retries else "resurrect"
            print(
                f"STALE   {job.id}  {job.kind.value:<9} {job.status.value:<9} "
                f"workspace={job.workspace_id} retries={job.retry_count} -> {action}"
            )
        for job in paused:
            print(f"PAUSED  {job.id}  {job.kind.value:<9} workspace={job.workspace_id} -> resume")
        logger.info("DRY RUN - No changes made (%d stale, %d resumable)", len(stale), len(paused))
        return 0

    report = runtime.watchdog().sweep()
    for key, value in report.to_dict().items():
        logger.info("%-20s %s", key, value)
    return 0


if __name__ == "__main__":
    sys.exit(main())
