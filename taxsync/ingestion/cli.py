"""
Ingestion CLI commands.

Operator entry points for running a backfill, checking webhook health and
inspecting import progress without going through the HTTP API.
"""

import asyncio
import json
import sys
from typing import Any, Dict

from taxsync.core.config import get_settings
from taxsync.core.errors import IntegrationNotFoundError
from taxsync.core.logging import configure_logging
from taxsync.ingestion.backfill import BackfillImporter
from taxsync.ingestion.reconciler import SubscriptionReconciler


def print_import_result(result: Dict[str, Any]):
    """Pretty print a backfill result."""
    print("\n=== Historical Import ===\n")
    print(f"Job ID: {result['job_id']}")
    print(f"Status: {result['status']}")
    print(f"Window: {result['window_start']} -> {result['window_end']}")
    print(f"Fetched: {result['total_fetched']}")
    print(f"Imported: {result['total_imported']}")
    print(f"Skipped: {result['total_skipped']}")
    if result["total_failed"]:
        print(f"Failed: {result['total_failed']}")
    if result["error"]:
        print(f"Error: {result['error']}")
    print()


def print_health(health: Dict[str, Any]):
    print("\n=== Webhook Health ===\n")
    print(f"Shop: {health['shop']}")
    print(f"Overall: {health['overall_status']}")
    for topic in health["webhooks"]:
        print(f"  {topic['topic']:<20} {topic['status']}")

    actions = health["actions"]
    if actions["deleted"] or actions["created"]:
        print(f"\nDeleted: {len(actions['deleted'])}  Created: {len(actions['created'])}")
    for error in actions["errors"]:
        print(f"  ! {error}")
    print(f"\nNext check: {health['next_check']}")
    print()


async def import_command(integration_id: str, max_orders: int | None = None) -> int:
    print(f"Starting historical import for {integration_id}...")
    importer = BackfillImporter()
    try:
        result = await importer.import_historical_orders(integration_id, max_orders=max_orders)
    except IntegrationNotFoundError as e:
        print(f"\n{e}")
        return 1
    print_import_result(result.to_dict())
    return 0 if result.status == "completed" else 1


async def health_command(integration_id: str) -> int:
    reconciler = SubscriptionReconciler()
    try:
        health = await reconciler.ensure_health(integration_id)
    except Exception as e:
        print(f"\nHealth check failed: {e}")
        return 1
    print_health(health.model_dump(mode="json"))
    return 0 if health.overall_status.value != "failed" else 1


async def health_all_command() -> int:
    results = await SubscriptionReconciler().run_global_health_check()
    if not results:
        print("No connected integrations.")
        return 0
    for integration_id, outcome in results.items():
        print(f"{integration_id}: {outcome['status']}")
    return 1 if any(r["status"] == "error" for r in results.values()) else 0


async def status_command(integration_id: str) -> int:
    status = await BackfillImporter().get_import_status(integration_id)
    if status is None:
        print(f"No import recorded for {integration_id}")
        return 1
    print(json.dumps(status, indent=2, default=str))
    return 0


def main():
    """Main CLI entry point."""
    if len(sys.argv) < 2:
        print("Usage: python -m taxsync.ingestion.cli <command> [options]")
        print("\nCommands:")
        print("  import <integration_id> [max_orders]   Run a historical import")
        print("  health <integration_id>                Check and repair webhooks")
        print("  health-all                             Check every connected integration")
        print("  status <integration_id>                Show import progress")
        print("\nExamples:")
        print("  python -m taxsync.ingestion.cli import int_123 500")
        print("  python -m taxsync.ingestion.cli health int_123")
        return 1

    configure_logging(get_settings().ENV)
    command = sys.argv[1]
    args = sys.argv[2:]

    try:
        if command == "import" and args:
            max_orders = int(args[1]) if len(args) > 1 else None
            return asyncio.run(import_command(args[0], max_orders))
        elif command == "health" and args:
            return asyncio.run(health_command(args[0]))
        elif command == "health-all":
            return asyncio.run(health_all_command())
        elif command == "status" and args:
            return asyncio.run(status_command(args[0]))
        else:
            print(f"Unknown command or missing argument: {command}")
            return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
