"""
Quota migration operator script.

backfill   create free-tier subscriptions (seeded from ground truth) for tenants lacking one
validate   report tenants without subscriptions and ledger drift (read-only)
test-run   seed synthetic "test-" data, migrate, validate, verify, clean up

Both backfill and validate are safe to re-run. Tenant scope comes from
QUOTA_TENANT_SCOPE unless --scope is given.

Usage (from backend/):
  python -m scripts.run_quota_migration backfill
  python -m scripts.run_quota_migration validate --scope school
  python -m scripts.run_quota_migration test-run
"""

import asyncio
import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
import logging

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def run(command: str, scope_name: str = None) -> dict:
    from services.tenant_scope import get_tenant_scope

    if command == "backfill":
        from services.quota_migration import migrate_existing_tenants
        result = await migrate_existing_tenants(scope=get_tenant_scope(scope_name))
        return result.model_dump()
    if command == "validate":
        from services.quota_migration import validate_migration
        report = await validate_migration(scope=get_tenant_scope(scope_name))
        return report.model_dump()
    if command == "test-run":
        from services.migration_test_harness import run_migration_test
        return await run_migration_test()
    raise ValueError(f"Unknown command: {command}")


def _exit_code(command: str, result: dict) -> int:
    if command == "backfill":
        return 1 if result.get("failed") else 0
    if command == "validate":
        dirty = (
            result.get("tenants_without_subscriptions")
            or result.get("subscriptions_with_incorrect_counts")
            or result.get("errors")
        )
        return 1 if dirty else 0
    return 0 if result.get("success") else 1


def main():
    parser = argparse.ArgumentParser(description="Backfill and validate subscription usage quotas")
    parser.add_argument("command", choices=["backfill", "validate", "test-run"])
    parser.add_argument("--scope", choices=["teacher", "school"], help="Tenant scope (default: QUOTA_TENANT_SCOPE)")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            result = await run(args.command, args.scope)
            if args.json:
                print(json.dumps(result, indent=2, default=str))
            elif args.command == "backfill":
                print(f"Total tenants: {result['total']}")
                print(f"Subscriptions created: {result['created']}")
                print(f"Already existed (skipped): {result['skipped']}")
                print(f"Failed: {result['failed']}")
                for e in result["errors"]:
                    print(f"  - {e['tenant_name']} ({e['tenant_id']}): {e['error']}")
            elif args.command == "validate":
                print(f"Total tenants: {result['total_tenants']}")
                print(f"Total subscriptions: {result['total_subscriptions']}")
                print(f"Tenants without subscriptions: {len(result['tenants_without_subscriptions'])}")
                for t in result["tenants_without_subscriptions"]:
                    print(f"  - {t['name']} ({t['id']})")
                print(f"Subscriptions with incorrect counts: {len(result['subscriptions_with_incorrect_counts'])}")
                for s in result["subscriptions_with_incorrect_counts"]:
                    print(
                        f"  - {s['tenant_name']} ({s['tenant_id']}): expected "
                        f"{s['expected']['subjects']}/{s['expected']['students']}, actual "
                        f"{s['actual']['subjects']}/{s['actual']['students']}"
                    )
            else:
                for name, stage in result["stages"].items():
                    print(f"{name}: {'PASS' if stage['passed'] else 'FAIL'}")
                print(f"Overall: {'PASS' if result['success'] else 'FAIL'}")
            return _exit_code(args.command, result)
        finally:
            await database.close()
    return asyncio.run(_())


if __name__ == "__main__":
    sys.exit(main())
