"""CLI entry point for the mailbox pipeline.

Examples:
    # Start an email import and let the deployed functions take over
    python src/functions/mailbox_pipeline/scripts/pipeline_cli.py start --workspace ws-1

    # Run the whole pipeline in this process, chaining through a local queue
    python src/functions/mailbox_pipeline/scripts/pipeline_cli.py start --workspace ws-1 --local

    # Show active and recent jobs
    python src/functions/mailbox_pipeline/scripts/pipeline_cli.py status --workspace ws-1
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[4]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.mailbox_pipeline.core.contracts.functions import WATCHDOG_FUNCTION
from src.functions.mailbox_pipeline.core.contracts.requests import StartPipelineRequest
from src.functions.mailbox_pipeline.core.orchestration.runtime import PipelineRuntime
from src.functions.mailbox_pipeline.core.relay.chainer import ChainCommand, LocalQueueTransport

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operate the mailbox pipeline.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--local",
        action="store_true",
        help="Run chained invocations in this process instead of calling the deployed functions",
    )
    parser.add_argument(
        "--max-invocations",
        type=int,
        default=10_000,
        help="Upper bound on invocations drained locally (default: 10000)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start the email or research pipeline")
    start.add_argument("--workspace", required=True, help="Workspace id")
    start.add_argument("--pipeline", choices=("email", "research"), default="email")
    start.add_argument("--import-mode", choices=("last_100", "last_1000", "full"), default="last_1000")
    start.add_argument("--no-reset", action="store_true", help="Reuse an active job instead of superseding it")

    status = subparsers.add_parser("status", help="Show jobs of a workspace")
    status.add_argument("--workspace", required=True, help="Workspace id")

    cancel = subparsers.add_parser("cancel", help="Cancel every active job of a workspace")
    cancel.add_argument("--workspace", required=True, help="Workspace id")

    subparsers.add_parser("watchdog", help="Run one watchdog sweep")
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    load_env()
    setup_logging(level="DEBUG" if args.verbose else None)

    queue = LocalQueueTransport() if args.local else None
    try:
        runtime = PipelineRuntime.from_env(transport=queue)
    except (ConfigurationError, ValueError) as exc:
        LOG.error("Configuration error: %s", exc)
        return 1

    if args.command == "start":
        result = runtime.start_pipeline(
            StartPipelineRequest(
                workspace_id=args.workspace,
                pipeline=args.pipeline,
                import_mode=args.import_mode,
                reset=not args.no_reset,
            )
        )
    elif args.command == "status":
        result = runtime.pipeline_status(args.workspace)
    elif args.command == "cancel":
        result = runtime.cancel_pipeline(args.workspace)
    else:
        result = runtime.invoke(WATCHDOG_FUNCTION, {})

    _print(result)
    if queue is not None:
        executed = queue.drain(lambda command: _run_local(runtime, command), max_commands=args.max_invocations)
        LOG.info("Ran %d chained invocations locally", executed)
    return 0 if result.get("status") != "error" else 2


def _run_local(runtime: PipelineRuntime, command: ChainCommand) -> Dict[str, Any]:
    result = runtime.invoke(command.function_name, command.payload)
    job = result.get("job") or {}
    LOG.info(
        "%s -> %s (%s/%s)",
        command.function_name,
        result.get("status"),
        job.get("items_done", "-"),
        job.get("items_total", "-"),
    )
    return result


def _print(result: Dict[str, Any]) -> None:
    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual execution entry
    sys.exit(run())
