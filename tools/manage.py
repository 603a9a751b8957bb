#!/usr/bin/env python3
"""
PharmaTrace Management CLI

Commands for operating the batch store and the reconciler:
- init-db: Create the batches table and indexes
- sweep: Reconcile every minted batch against the ledger once
- hash: Compute the metadata hash of a batch's identity fields
- verify: Verify a batch by token id or batch id
- health-check: Check store and ledger connectivity
- serve: Run the API server with uvicorn

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage hash --batch-id B1 --drug-name Amoxicillin \\
        --manufacturing-date 2024-01-05 --expiry-date 2026-01-05 \\
        --quantity 100 --manufacturer 0xabc...
    python -m tools.manage verify 7 --qr "$(cat scan.txt)"
"""

import argparse
import json
import sys


def cmd_init_db(args):
    """Create the batches table (idempotent)."""
    from pharmatrace.db import DatabaseConfig, database_configured
    from pharmatrace.services import create_postgres_store

    if args.database_url:
        config = DatabaseConfig.from_url(args.database_url)
    elif database_configured():
        config = DatabaseConfig.from_env()
    else:
        print("Error: set DATABASE_URL or DATABASE_HOST, or pass --database-url")
        return 1

    print(f"Initializing schema on {config.to_url(include_password=False)}...")
    store = create_postgres_store(config)
    print(f"[OK] Schema ready ({store.count()} batches)")
    return 0


def cmd_sweep(args):
    """Run one reconciliation sweep."""
    from pharmatrace.core import ReconcilerConfig, ReconciliationService
    from pharmatrace.services import create_ledger, create_store

    ledger = create_ledger()
    if not ledger.is_configured:
        print("Error: PHARMATRACE_CONTRACT_ADDRESS is not set")
        return 1

    store = create_store()
    config = ReconcilerConfig.from_env()
    if args.batch_size:
        config.sweep_batch_size = args.batch_size

    print(f"Sweeping {len(store.list_bound())} minted batches against {ledger.address}...")
    report = ReconciliationService(store, ledger, config).sweep()

    print("\nSweep complete!")
    for key, value in report.to_dict().items():
        print(f"  {key}: {value}")
    return 1 if report.failed else 0


def cmd_hash(args):
    """Compute the canonical metadata hash."""
    from pharmatrace.core import CanonicalSerializationError, IntegrityHasher

    if args.json:
        with open(args.json) as f:
            fields = json.load(f)
    else:
        fields = {
            "batchID": args.batch_id,
            "drugName": args.drug_name,
            "manufacturingDate": args.manufacturing_date,
            "expiryDate": args.expiry_date,
            "quantity": args.quantity,
            "manufacturer": args.manufacturer,
        }

    try:
        print(IntegrityHasher.compute_hash(fields))
    except CanonicalSerializationError as e:
        print(f"Error: {e}")
        return 1
    return 0


def cmd_verify(args):
    """Verify a batch and print the full result."""
    from pharmatrace.core import AuthenticityVerifier, BatchNotFound, InvalidVerificationRequest
    from pharmatrace.schemas import VerificationRequest
    from pharmatrace.services import create_ledger, create_store

    verifier = AuthenticityVerifier(create_store(), create_ledger())

    identifier = args.identifier
    request = VerificationRequest(
        token_id=int(identifier) if identifier.isdigit() else None,
        batch_id=None if identifier.isdigit() else identifier,
        qr_payload=args.qr,
    )

    try:
        result = verifier.verify(request)
    except (BatchNotFound, InvalidVerificationRequest) as e:
        print(f"Error: {e}")
        return 2

    print(json.dumps(result.to_public(), indent=2))
    if result.authentic:
        print("\n[OK] Batch is authentic")
        return 0
    print("\n[FAIL] Batch failed verification")
    return 1


def cmd_health_check(args):
    """Run store and ledger health checks."""
    from pharmatrace.observability import check_health
    from pharmatrace.services import create_ledger, create_store

    print("=== PharmaTrace Health Check ===\n")
    status = check_health(store=create_store(), ledger=create_ledger())

    for name, check in status.checks.items():
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        marker = "[FAIL]" if check["status"] == "unhealthy" else "[OK]"
        print(f"  {name}: {marker} {check['status']}" + (f" ({details})" if details else ""))

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    uvicorn.run(
        "pharmatrace.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="PharmaTrace Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-db
    p_init = subparsers.add_parser("init-db", help="Create the batches table")
    p_init.add_argument("--database-url", help="PostgreSQL URL (default: DATABASE_URL)")

    # sweep
    p_sweep = subparsers.add_parser("sweep", help="Reconcile minted batches against the ledger")
    p_sweep.add_argument("--batch-size", type=int, help="Rows reconciled concurrently")

    # hash
    p_hash = subparsers.add_parser("hash", help="Compute a batch metadata hash")
    p_hash.add_argument("--json", help="JSON file with the identity fields")
    p_hash.add_argument("--batch-id")
    p_hash.add_argument("--drug-name")
    p_hash.add_argument("--manufacturing-date", help="YYYY-MM-DD")
    p_hash.add_argument("--expiry-date", help="YYYY-MM-DD")
    p_hash.add_argument("--quantity", type=int, default=1)
    p_hash.add_argument("--manufacturer", help="Manufacturer address")

    # verify
    p_verify = subparsers.add_parser("verify", help="Verify a batch")
    p_verify.add_argument("identifier", help="Token id or batch id")
    p_verify.add_argument("--qr", help="Scanned QR payload (JSON or base64)")

    # health-check
    subparsers.add_parser("health-check", help="Check store and ledger connectivity")

    # serve
    p_serve = subparsers.add_parser("serve", help="Run the API server")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "hash" and not args.json:
        missing = [
            name for name in ("batch_id", "drug_name", "manufacturing_date", "expiry_date", "manufacturer")
            if not getattr(args, name)
        ]
        if missing:
            parser.error("hash requires --json or " + ", ".join(f"--{m.replace('_', '-')}" for m in missing))

    commands = {
        "init-db": cmd_init_db,
        "sweep": cmd_sweep,
        "hash": cmd_hash,
        "verify": cmd_verify,
        "health-check": cmd_health_check,
        "serve": cmd_serve,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
