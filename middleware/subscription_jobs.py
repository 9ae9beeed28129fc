"""
Subscription Maintenance Jobs

Scheduled and manual operations on webhook subscriptions and events:

  renew      renew subscriptions expiring within --days (default 15)
  reconcile  align local subscriptions with the provider's list
  events     show the recent event feed for an account
  reprocess  replay jobs whose events ended in error

Runs from the command line or as a scheduled Lambda (EventBridge).
The renew command exits non-zero when any renewal failed.
"""

import argparse
import asyncio
import os
import sys
from typing import Any, Dict, List, Optional

from fic_middleware.config import settings
from fic_middleware.container import ServiceContainer
from fic_middleware.handlers.webhook_processor import ProcessingStatus
from fic_middleware.utils.logging_config import get_logger, setup_logging

setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = get_logger(__name__)


async def renew(container: ServiceContainer, days: int, dry_run: bool = False) -> int:
    expiring = await container.lifecycle.find_expiring(days)
    print(f"Found {len(expiring)} subscription(s) expiring within {days} days")

    summary = await container.lifecycle.renew_all(expiring, dry_run=dry_run)
    for result in summary.results:
        print(f"  [{result.outcome.value}] account {result.account_id} / {result.event_group}: {result.message}")
    print(f"Summary: {summary.renewed} renewed, {summary.failed} failed")

    return summary.exit_code


async def reconcile(container: ServiceContainer, account_id: Optional[str], dry_run: bool = False) -> int:
    if account_id:
        account_ids = [account_id]
    else:
        account_ids = [account.account_id for account in await container.accounts.list_accounts()]

    errors = 0
    for current in account_ids:
        try:
            summary = await container.lifecycle.reconcile(current, dry_run=dry_run)
        except Exception as e:
            errors += 1
            logger.error(f"Reconcile failed: {e}", extra={"account_id": current})
            print(f"  account {current}: failed ({e})")
            continue
        prefix = "[dry run] " if dry_run else ""
        print(
            f"  {prefix}account {current}: {summary.created} created, "
            f"{summary.updated} updated, {summary.deactivated} deactivated"
        )

    return 1 if errors else 0


async def events(container: ServiceContainer, account_id: str, limit: int) -> int:
    feed = await container.events.list_feed(account_id, limit=limit)
    for event in feed:
        occurred = event.occurred_at.isoformat() if event.occurred_at else "-"
        print(
            f"{occurred}  {event.status.value:<9}  {event.resource_type:<8}  "
            f"{event.fic_resource_id:<10}  {event.event_type}"
        )
    print(f"{len(feed)} event(s)")
    return 0


async def reprocess(container: ServiceContainer, account_id: str) -> int:
    results = await container.processor.reprocess_failed(account_id)
    failed = sum(1 for r in results if r.status == ProcessingStatus.FAILED)
    print(f"Reprocessed {len(results)} job(s), {failed} still failing")
    return 1 if failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fatture in Cloud subscription maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python subscription_jobs.py renew --days 15
  python subscription_jobs.py reconcile --account-id 42 --dry-run
  python subscription_jobs.py events --account-id 42 --limit 20
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    renew_parser = subparsers.add_parser("renew", help="Renew expiring subscriptions")
    renew_parser.add_argument(
        "--days",
        type=int,
        default=settings.subscription_renewal_days,
        help="Renew subscriptions expiring within this many days",
    )
    renew_parser.add_argument("--dry-run", action="store_true", help="Report without renewing")

    reconcile_parser = subparsers.add_parser("reconcile", help="Sync subscriptions from the provider")
    reconcile_parser.add_argument("--account-id", help="Only this account (default: all)")
    reconcile_parser.add_argument("--dry-run", action="store_true", help="Report without writing")

    events_parser = subparsers.add_parser("events", help="Show the event feed for an account")
    events_parser.add_argument("--account-id", required=True)
    events_parser.add_argument("--limit", type=int, default=50)

    reprocess_parser = subparsers.add_parser("reprocess", help="Replay failed webhook jobs")
    reprocess_parser.add_argument("--account-id", required=True)

    return parser


async def run(args: argparse.Namespace, container: Optional[ServiceContainer] = None) -> int:
    owns_container = container is None
    container = container or ServiceContainer.from_settings(settings)

    try:
        if args.command == "renew":
            return await renew(container, args.days, dry_run=args.dry_run)
        if args.command == "reconcile":
            return await reconcile(container, args.account_id, dry_run=args.dry_run)
        if args.command == "events":
            return await events(container, args.account_id, args.limit)
        if args.command == "reprocess":
            return await reprocess(container, args.account_id)
        print(f"Unknown command: {args.command}")
        return 1
    finally:
        if owns_container:
            await container.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(run(args))


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled entry point, e.g. an EventBridge rule with
    ``{"command": "renew", "days": 15}``.

    Raises:
        RuntimeError: When the job reports failures, so the invocation is
            counted as an error for alerting
    """
    argv = [event.get("command", "renew")]
    if argv[0] == "renew":
        argv += ["--days", str(event.get("days", settings.subscription_renewal_days))]
    if event.get("account_id"):
        argv += ["--account-id", str(event["account_id"])]
    if event.get("dry_run") and argv[0] in ("renew", "reconcile"):
        argv.append("--dry-run")

    logger.info("Scheduled job invoked", extra={"argv": argv})
    exit_code = asyncio.run(run(build_parser().parse_args(argv)))

    if exit_code:
        raise RuntimeError(f"Scheduled job '{argv[0]}' finished with failures")
    return {"command": argv[0], "exit_code": exit_code}


if __name__ == "__main__":
    sys.exit(main())
