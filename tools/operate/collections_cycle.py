#!/usr/bin/env python3
"""Collections cycle runner.

Command-line tool for running one collection trigger against the
configured database. Intended for cron hosts without HTTP access and for
operators reproducing a cycle by hand.
"""

import argparse
import json
import logging
import sys

from agents.dunning.cycles import (
    build_context,
    run_active_campaigns,
    run_auto_create_cycle,
    run_campaign_cycle,
    run_payment_check_cycle,
    run_risk_sweep,
    run_task_cycle,
)
from agents.dunning.errors import DunningError
from backend.core.observability import bind_trace
from backend.integrations.brevo_client import BrevoEmailSender


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration.

    Args:
        verbose: Enable verbose logging
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run one collections trigger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Execute every active campaign without sending real mail
  python tools/operate/collections_cycle.py --dry-run campaigns

  # Run due scheduled tasks, at most 20
  python tools/operate/collections_cycle.py tasks --batch-size 20

  # Auto-create campaigns for one organization
  python tools/operate/collections_cycle.py auto-create --org acme
        """,
    )
    parser.add_argument("--dry-run", action="store_true", help="Never call the email provider")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--trace-id", help="Trace ID for log correlation (default: generated)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("campaigns", help="Execute all active campaigns")

    campaign = sub.add_parser("campaign", help="Execute one campaign")
    campaign.add_argument("campaign_id")

    tasks = sub.add_parser("tasks", help="Run due scheduled tasks")
    tasks.add_argument("--batch-size", type=int, default=None)

    sub.add_parser("payments", help="Complete campaigns whose invoices are all paid")

    auto = sub.add_parser("auto-create", help="Create campaigns for unassigned overdue invoices")
    auto.add_argument("--org", default=None, help="Organization id (default: all)")

    sweep = sub.add_parser("risk-sweep", help="Reclassify open invoices of an organization")
    sweep.add_argument("--org", required=True)

    cleanup = sub.add_parser("cleanup", help="Delete finished tasks older than N days")
    cleanup.add_argument("--days", type=int, default=None)

    stats = sub.add_parser("stats", help="Show task counts per status")
    stats.add_argument("--org", default=None)
    return parser


def run(args: argparse.Namespace) -> dict:
    collaborators = {}
    if args.dry_run:
        collaborators["sender"] = BrevoEmailSender(dry_run=True)
    ctx = build_context(**collaborators)

    if args.command == "campaigns":
        return run_active_campaigns(ctx).to_dict()
    if args.command == "campaign":
        return run_campaign_cycle(ctx, args.campaign_id).to_dict()
    if args.command == "tasks":
        return run_task_cycle(ctx, args.batch_size).to_dict()
    if args.command == "payments":
        return run_payment_check_cycle(ctx).to_dict()
    if args.command == "auto-create":
        return run_auto_create_cycle(ctx, args.org).to_dict()
    if args.command == "risk-sweep":
        return run_risk_sweep(ctx, args.org).to_dict()
    if args.command == "cleanup":
        return {"deleted": ctx.scheduler.cleanup(args.days)}
    return ctx.scheduler.stats(args.org)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)
    bind_trace(args.trace_id)

    try:
        result = run(args)
    except DunningError as e:
        logger.error(f"Collections cycle failed: {e}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
