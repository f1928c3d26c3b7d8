"""
Command-line interface.

Usage:
    python -m tally_ingest init-db
    python -m tally_ingest add-tenant --company <uuid> --division <uuid> --name "Acme"
    python -m tally_ingest ingest daybook.xml --company <uuid> --division <uuid>
    python -m tally_ingest sync --company <uuid> --division <uuid> [--tables ledgers vouchers]
    python -m tally_ingest link --company <uuid> --division <uuid>
    python -m tally_ingest reconcile --company <uuid> --division <uuid>
    python -m tally_ingest validate --company <uuid> --division <uuid>

Reports are printed to stdout as JSON; the exit code is 1 on failure.
"""
from __future__ import annotations
import argparse
import json
import sys
from pathlib import Path
from typing import Optional
from loguru import logger
from pydantic import BaseModel

from .config import IngestConfig, configure_logging
from .ingest import ingest_payload
from .linker import RelationshipLinker
from .loaders.base import PostgresStore, StoreError
from .loaders.memory import MemoryStore
from .models import LINKABLE_TABLES, Tenant
from .reconciler import AmountReconciler
from .sync import SOURCE_TABLES, SYNC_ACTIONS, run_sync
from .validator import validate


def _emit(payload) -> None:
    if isinstance(payload, BaseModel):
        print(payload.model_dump_json(indent=2))
    else:
        print(json.dumps(payload, indent=2, default=str))


def _add_tenant_args(p: argparse.ArgumentParser):
    p.add_argument("--company", required=True, help="Company id (UUID)")
    p.add_argument("--division", required=True, help="Division id (UUID)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tally_ingest",
        description="Tally Ingest - Load Tally XML and sync API data into PostgreSQL",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("init-db", help="Create the schema and tables")

    tenant_parser = subparsers.add_parser("add-tenant", help="Register a company and division")
    _add_tenant_args(tenant_parser)
    tenant_parser.add_argument("--name", required=True, help="Company name")
    tenant_parser.add_argument("--division-name", default="Main", help="Division name")
    tenant_parser.add_argument("--tally-company-id", help="Company id inside Tally")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest a Tally XML payload")
    ingest_parser.add_argument("path", help="XML file to ingest ('-' for stdin)")
    _add_tenant_args(ingest_parser)
    ingest_parser.add_argument("--live-updates", action="store_true", help="Include per-voucher updates")
    ingest_parser.add_argument(
        "--dry-run", action="store_true", help="Ingest into an in-memory store; nothing is written"
    )

    sync_parser = subparsers.add_parser("sync", help="Run a sync API action")
    _add_tenant_args(sync_parser)
    sync_parser.add_argument("--action", choices=SYNC_ACTIONS, default="full_sync")
    sync_parser.add_argument(
        "--tables", nargs="*", choices=list(SOURCE_TABLES), help="Source tables (default: all)"
    )

    link_parser = subparsers.add_parser("link", help="Link child rows to their vouchers")
    _add_tenant_args(link_parser)
    link_parser.add_argument("--limit", "-n", type=int, help="Rows read per page (default: TALLY_LINK_BATCH_SIZE)")

    reconcile_parser = subparsers.add_parser("reconcile", help="Recompute missing voucher amounts")
    _add_tenant_args(reconcile_parser)

    validate_parser = subparsers.add_parser("validate", help="Audit referential integrity")
    _add_tenant_args(validate_parser)

    return parser


def _read_payload(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8", errors="replace")


def _run(args: argparse.Namespace, config: IngestConfig) -> int:
    if args.command == "init-db":
        with PostgresStore(config) as store:
            store.create_schema()
        _emit({"success": True, "schema": config.db_schema})
        return 0

    if args.command == "add-tenant":
        with PostgresStore(config) as store:
            created_company = store.insert_if_absent("companies", {
                "id": args.company, "name": args.name, "tally_company_id": args.tally_company_id,
            })
            created_division = store.insert_if_absent("divisions", {
                "id": args.division, "company_id": args.company, "name": args.division_name,
            })
        _emit({"success": True, "company_created": created_company, "division_created": created_division})
        return 0

    if args.command == "ingest":
        store = MemoryStore() if args.dry_run else None
        result = ingest_payload(
            _read_payload(args.path),
            args.company,
            args.division,
            live_updates=args.live_updates,
            store=store,
            config=config,
        )
        _emit(result)
        return 0 if result.success else 1

    if args.command == "sync":
        report = run_sync(args.company, args.division, tables=args.tables, action=args.action, config=config)
        _emit(report)
        return 0 if report.success else 1

    tenant = Tenant(company_id=args.company, division_id=args.division)

    if args.command == "link":
        with PostgresStore(config) as store:
            linker = RelationshipLinker(store, config)
            reports = [linker.link_table(t, tenant, limit=args.limit) for t in LINKABLE_TABLES]
        _emit([r.model_dump() for r in reports])
        return 1 if any(r.errors for r in reports) else 0

    if args.command == "reconcile":
        with PostgresStore(config) as store:
            report = AmountReconciler(store, config).run(tenant)
        _emit(report)
        return 1 if report.errors else 0

    if args.command == "validate":
        report = validate(args.company, args.division, config=config)
        _emit(report)
        return 0 if report.state == "success" else 1

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    config = IngestConfig.from_env()
    configure_logging(config, verbose=args.verbose)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return 1

    try:
        return _run(args, config)
    except StoreError as e:
        logger.error(f"Database error: {e}")
        return 1
    except OSError as e:
        logger.error(f"Cannot read input: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
