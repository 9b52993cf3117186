#!/usr/bin/env python3
"""
CaseTrail Management CLI

Commands:
- init-db: Apply the document store schema (psycopg2)
- create-admin: Create or promote a wallet to verified admin
- stats: Print dashboard counters
- generate-keypair: Generate the system Ed25519 signing keypair
- health-check: Check database connectivity and environment

Usage:
    python tools/manage.py <command> [options]

Examples:
    python tools/manage.py init-db
    python tools/manage.py create-admin --wallet 0xAbC123...
    python tools/manage.py generate-keypair
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _require_database():
    from casetrail.db.config import get_database_config

    config = get_database_config()
    if config is None:
        print("Error: no database configured. Set DATABASE_URL or DATABASE_HOST.")
        return None
    return config


def cmd_init_db(args):
    """Apply schema.sql to the configured PostgreSQL database."""
    import psycopg2

    from casetrail.db import SCHEMA_PATH

    config = _require_database()
    if config is None:
        return 1

    print(f"Applying schema to {config.redacted_url()}")
    conn = psycopg2.connect(config.to_dsn())
    try:
        with conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_PATH.read_text())
    finally:
        conn.close()
    print("[OK] Schema applied")
    return 0


async def _with_store(config, action):
    from casetrail.db import PostgresDocumentStore

    store = await PostgresDocumentStore.connect(config)
    try:
        return await action(store)
    finally:
        await store.close()


def cmd_create_admin(args):
    """Create the wallet as a verified admin, or promote it."""
    from casetrail.core import IdentityResolver

    config = _require_database()
    if config is None:
        return 1

    async def action(store):
        return await IdentityResolver(store).ensure_admin(args.wallet)

    admin = asyncio.run(_with_store(config, action))
    print("\n[OK] Admin ready")
    print(f"  Actor ID: {admin.id}")
    print(f"  Wallet:   {admin.wallet_address}")
    print(f"  Status:   {admin.verification_status.value}")
    return 0


def cmd_stats(args):
    """Print the dashboard counters."""
    from casetrail.core import AggregateStats

    config = _require_database()
    if config is None:
        return 1

    async def action(store):
        return await AggregateStats(store).compute()

    stats = asyncio.run(_with_store(config, action))
    if args.json:
        print(json.dumps(stats.model_dump(), indent=2))
        return 0

    print("=== CaseTrail Stats ===\n")
    print(f"  Total cases:           {stats.total_cases}")
    print(f"  Pending verification:  {stats.pending_verification_count}")
    print(f"  Caseworkers:           {stats.caseworker_count}")
    print(f"  Closed cases:          {stats.closed_case_count}")
    print("\n  Cases by status:")
    for status, count in stats.cases_by_status.items():
        print(f"    {status:12} {count}")
    print("\n  Actors by role:")
    for role, count in stats.actors_by_role.items():
        print(f"    {role:12} {count}")
    return 0


def cmd_generate_keypair(args):
    """Generate the system signing keypair for the simulated ledger."""
    from casetrail.core import Signer

    private_key, public_key = Signer.generate_keypair()
    print("\nSet these environment variables:")
    print(f"  CASETRAIL_SYSTEM_PRIVATE_KEY={private_key}")
    print(f"  CASETRAIL_SYSTEM_PUBLIC_KEY={public_key}")
    print("\n  The private key signs every simulated ledger transaction. KEEP SECRET!")
    return 0


def _check_database():
    from casetrail.db import StoreDriver, get_store_driver
    from casetrail.db.config import get_database_config

    driver = get_store_driver()
    config = get_database_config()
    if driver == StoreDriver.MEMORY or config is None:
        return True, "in-memory (nothing persists across restarts)"

    import psycopg2

    try:
        psycopg2.connect(config.to_dsn()).close()
    except psycopg2.Error as e:
        return False, f"{config.redacted_url()} unreachable: {e}"
    return True, f"{config.redacted_url()} reachable"


def _check_ledger():
    from casetrail.core import LedgerConfig

    try:
        config = LedgerConfig.from_env()
    except ValueError as e:
        return False, str(e)
    target = config.gateway_url if config.driver == "gateway" else "local hash chain"
    return True, f"{config.driver} ({target}), timeout {config.timeout_seconds:g}s"


def _check_env(var, missing, min_length=1):
    value = os.environ.get(var, "")
    if len(value) >= min_length:
        return True, "set"
    return None, missing


def cmd_health_check(args):
    """Report on the database, the ledger settings and required secrets."""
    checks = [
        ("Document store", _check_database()),
        ("Ledger", _check_ledger()),
        ("Session secret", _check_env(
            "CASETRAIL_SESSION_SECRET", "insecure development default", min_length=16)),
        ("System signing key", _check_env(
            "CASETRAIL_SYSTEM_PRIVATE_KEY", "ephemeral key, regenerated on restart")),
        ("Admin wallet", _check_env(
            "CASETRAIL_ADMIN_WALLET", "not set; run create-admin")),
    ]

    labels = {True: "OK", False: "FAIL", None: "WARN"}
    for name, (ok, detail) in checks:
        print(f"[{labels[ok]:4}] {name:20} {detail}")

    return 1 if any(ok is False for _, (ok, _) in checks) else 0


def main():
    parser = argparse.ArgumentParser(
        description="CaseTrail Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Apply the document store schema")

    p_admin = subparsers.add_parser("create-admin", help="Create or promote an admin wallet")
    p_admin.add_argument("--wallet", required=True, help="Wallet address")

    p_stats = subparsers.add_parser("stats", help="Print dashboard counters")
    p_stats.add_argument("--json", action="store_true", help="Output JSON")

    subparsers.add_parser("generate-keypair", help="Generate the system signing keypair")

    subparsers.add_parser("health-check", help="Check database and environment")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "create-admin": cmd_create_admin,
        "stats": cmd_stats,
        "generate-keypair": cmd_generate_keypair,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
