from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from orderflow.core.config import get_settings
from orderflow.core.logging import configure_logging
from orderflow.domain.email.client import build_email_client
from orderflow.domain.email.sender import retry_failed_emails
from orderflow.domain.email.templates import EMAIL_KINDS
from orderflow.persistence.pg import init_db, session_scope
from orderflow.reconciliation.rules import run_order_reconciliation


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Orderflow webhook reconciliation CLI")
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("init-db", help="Create database tables")

    emails = top.add_parser("emails", help="Transactional email ledger operations")
    emails_sub = emails.add_subparsers(dest="emails_command", required=True)
    retry = emails_sub.add_parser("retry", help="Re-send emails whose last attempt failed")
    retry.add_argument("--order-id", default=None)
    retry.add_argument("--kind", choices=list(EMAIL_KINDS), default=None)
    retry.add_argument("--limit", type=int, default=50)

    reconcile = top.add_parser("reconcile", help="Audit stored orders against their invariants")
    reconcile.add_argument("--order-id", default=None)

    return parser


def _print(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _retry_emails(args: argparse.Namespace) -> int:
    init_db()
    client = build_email_client(get_settings())
    if client is None:
        _print({"error": "email_disabled", "detail": "OF_EMAIL_API_KEY is not set"})
        return 1

    outcomes = retry_failed_emails(None, client, order_id=args.order_id, email_kind=args.kind, limit=args.limit)
    _print(
        [
            {
                "order_id": outcome.order_id,
                "email_kind": outcome.email_kind,
                "status": outcome.status,
                "message_id": outcome.message_id,
            }
            for outcome in outcomes
        ]
    )
    return 0 if all(outcome.status != "failed" for outcome in outcomes) else 1


def _reconcile(args: argparse.Namespace) -> int:
    init_db()
    with session_scope() as session:
        results = run_order_reconciliation(session, order_id=args.order_id)
    _print([asdict(result) for result in results])
    return 0 if all(result.passed for result in results) else 1


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "init-db":
        init_db()
        _print({"status": "ok"})
        return 0
    if args.command == "emails" and args.emails_command == "retry":
        return _retry_emails(args)
    if args.command == "reconcile":
        return _reconcile(args)

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
