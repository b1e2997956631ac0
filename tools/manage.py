#!/usr/bin/env python3
"""
AuditChain Management CLI

Commands for operating the ledger:
- init-schema: Create the PostgreSQL tables and append-only trigger
- verify-chain: Deep-verify one chain (or every chain)
- export: Export a signed compliance bundle for a date range
- generate-key: Generate an Ed25519 export signing keypair
- health-check: Run the same checks as /health/detailed

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-schema
    python -m tools.manage verify-chain team_42
    python -m tools.manage export team_42 --from 2026-01-01 --to 2026-03-31 --out q1.json
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_schema(args):
    """Apply db/schema.sql to the configured database."""
    from auditchain.db import LedgerStoreDriver, get_ledgerstore_driver
    from auditchain.services import create_ledger_store

    if get_ledgerstore_driver() == LedgerStoreDriver.MEMORY:
        print("Error: no database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    store = create_ledger_store()
    try:
        store.apply_schema()
    finally:
        store.close()
    print("[OK] Schema applied")
    return 0


def cmd_verify_chain(args):
    """Deep-verify chains and print every defect."""
    from auditchain.services import build_services

    services = build_services()
    try:
        chain_ids = [args.chain_id] if args.chain_id else [c.chain_id for c in services.store.list_chains()]
        if not chain_ids:
            print("No chains to verify.")
            return 0

        failed = 0
        for chain_id in chain_ids:
            result = services.verifier.verify(chain_id)
            if result.is_valid:
                print(f"[OK] {chain_id}: {result.verified_entries} entries verified")
                continue
            failed += 1
            print(f"[FAIL] {chain_id}: first invalid entry {result.first_invalid_entry}")
            for defect in result.errors:
                print(f"  {defect.kind.value} at {defect.sequence}: {defect.message}")
        return 1 if failed else 0
    finally:
        services.close()


def cmd_export(args):
    """Export a signed bundle to a file."""
    from auditchain.core import LedgerError
    from auditchain.services import build_services

    try:
        from_date = date.fromisoformat(args.from_date)
        to_date = date.fromisoformat(args.to_date)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    services = build_services()
    try:
        bundle = services.bundler.export(args.chain_id, from_date, to_date, exported_by=args.exported_by)
    except LedgerError as e:
        print(f"[FAIL] {e.code}: {e}")
        return 1
    finally:
        services.close()

    output_file = args.out or f"audit-{args.chain_id}-{from_date}-{to_date}.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(bundle, f, indent=2, sort_keys=True)

    metadata = bundle["export_metadata"]
    print(f"[OK] Exported {metadata['entry_count']} entries to {output_file}")
    print(f"  Checksum:   {metadata['checksum']}")
    print(f"  Public key: {metadata['public_key']}")
    return 0


def cmd_generate_key(args):
    """Generate an Ed25519 keypair for signing exports."""
    from auditchain.core import Signer

    private_key, public_key = Signer.generate_keypair()

    print("\n  Public key (give to auditors):")
    print(f"  {public_key}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set these environment variables:")
    print(f"  AUDITCHAIN_EXPORT_PRIVATE_KEY={private_key}")
    print(f"  AUDITCHAIN_EXPORT_PUBLIC_KEY={public_key}")
    return 0


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from auditchain.observability import check_health
    from auditchain.services import build_services

    print("=== AuditChain Health Check ===\n")
    services = build_services()
    try:
        status = check_health(store=services.store, verifier=services.verifier)
    finally:
        services.close()

    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}".rstrip())

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main():
    parser = argparse.ArgumentParser(
        description="AuditChain Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-schema", help="Create tables and the append-only trigger")

    p_verify = subparsers.add_parser("verify-chain", help="Deep-verify chain integrity")
    p_verify.add_argument("chain_id", nargs="?", help="Chain to verify (default: all)")

    p_export = subparsers.add_parser("export", help="Export a signed compliance bundle")
    p_export.add_argument("chain_id", help="Chain to export")
    p_export.add_argument("--from", dest="from_date", required=True, help="First day (YYYY-MM-DD, UTC)")
    p_export.add_argument("--to", dest="to_date", required=True, help="Last day (YYYY-MM-DD, UTC)")
    p_export.add_argument("--out", "-o", help="Output file")
    p_export.add_argument("--exported-by", help="Recorded in export_metadata")

    subparsers.add_parser("generate-key", help="Generate an export signing keypair")
    subparsers.add_parser("health-check", help="Run comprehensive health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-schema": cmd_init_schema,
        "verify-chain": cmd_verify_chain,
        "export": cmd_export,
        "generate-key": cmd_generate_key,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
