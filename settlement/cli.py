from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from settlement.core.config import get_settings
from settlement.core.logging import configure_logging
from settlement.persistence.pg import init_db
from settlement.reconciliation.rules import run_order_reconciliation
from settlement.services import get_services


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marketplace settlement CLI")
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("init-db", help="Create the document tables")

    retry = top.add_parser("retry-payouts", help="Retry pending payouts whose payee can now be paid")
    retry.add_argument("--limit", type=int, default=None)
    retry.add_argument("--max-age-days", type=int, default=None)

    reconcile = top.add_parser("reconcile", help="Run reconciliation checks for one order")
    reconcile.add_argument("order_id")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _init_db(_: argparse.Namespace) -> int:
    init_db()
    _print({"status": "ok", "database_url": get_settings().database_url})
    return 0


def _retry_payouts(args: argparse.Namespace) -> int:
    services = get_services()
    results = services.router.retry_pending(limit=args.limit, max_age_days=args.max_age_days)
    _print(
        {
            "count": len(results),
            "paid": sum(1 for r in results if r.state == "paid"),
            "results": [asdict(r) for r in results],
        }
    )
    return 0


def _reconcile(args: argparse.Namespace) -> int:
    services = get_services()
    results = run_order_reconciliation(services.store, args.order_id)
    passed = all(r.passed for r in results)
    _print({"order_id": args.order_id, "passed": passed, "results": [asdict(r) for r in results]})
    return 0 if passed else 1


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "init-db":
        return _init_db(args)
    if args.command == "retry-payouts":
        return _retry_payouts(args)
    if args.command == "reconcile":
        return _reconcile(args)

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
