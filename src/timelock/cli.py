from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict

from timelock.api.schemas import AccountView, ScheduleView, StatsView
from timelock.config import Settings
from timelock.domain.errors import ConfigurationError, TimelockError
from timelock.domain.models import IntentStatus, SettlementIntent
from timelock.logging_utils import setup_logging
from timelock.persistence.uow import UnitOfWorkFactory
from timelock.security.redaction import redact_data
from timelock.services.intent_journal import IntentJournal
from timelock.services.ledger_store import LedgerStore
from timelock.services.orchestrator import TransactionOrchestrator
from timelock.services.reconcile_service import ReconcileService
from timelock.services.settlement_factory import build_settlement_client
from timelock.services.stats_service import StatsService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="timelock",
        epilog="Settings come from the environment (see .env.example); --env-file loads a dotenv file.",
    )
    parser.add_argument("--env-file", default=None, help="Optional dotenv file to load settings from")
    parser.add_argument("--db", default=None, help="Override STATE_DB_PATH")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    subparsers.add_parser("stats", help="Print ledger statistics")

    accounts_parser = subparsers.add_parser("accounts", help="List lock records, newest first")
    accounts_parser.add_argument("--owner", default=None, help="Only records owned by this address")

    subparsers.add_parser("schedule", help="Print supported lock periods and rates")
    subparsers.add_parser("reconcile", help="Drive open settlement intents to a final state")

    intents_parser = subparsers.add_parser("intents", help="Inspect and resolve settlement intents")
    intents_subparsers = intents_parser.add_subparsers(dest="intents_command", required=True)
    intents_list = intents_subparsers.add_parser("list", help="List settlement intents")
    intents_list.add_argument(
        "--status",
        action="append",
        choices=[status.value for status in IntentStatus],
        default=None,
        help="Filter by status; may be repeated",
    )
    intents_resolve = intents_subparsers.add_parser(
        "resolve", help="Record an intent using a settlement reference verified by hand"
    )
    intents_resolve.add_argument("--intent-id", required=True)
    intents_resolve.add_argument("--settlement-ref", required=True)
    intents_abandon = intents_subparsers.add_parser(
        "abandon", help="Mark an intent failed after verifying nothing settled"
    )
    intents_abandon.add_argument("--intent-id", required=True)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args.env_file, db_override=args.db)
    except ConfigurationError as exc:
        print(json.dumps({"error": {"kind": "ConfigurationError", "message": str(exc)}}), file=sys.stderr)
        return 2
    setup_logging(settings.log_level)
    logger.info(
        "runtime_prepared",
        extra={
            "extra": {
                "command": args.command,
                "db_path": settings.state_db_path,
                "signing_mode": str(settings.signing_mode),
                "live": settings.is_live(),
                "pid": os.getpid(),
            }
        },
    )

    try:
        if args.command == "serve":
            return run_serve(settings, host=args.host, port=args.port)
        if args.command == "stats":
            return run_stats(settings)
        if args.command == "accounts":
            return run_accounts(settings, owner=args.owner)
        if args.command == "schedule":
            return run_schedule(settings)
        if args.command == "reconcile":
            return run_reconcile(settings)
        if args.command == "intents":
            if args.intents_command == "list":
                return run_intents_list(settings, statuses=args.status or [])
            if args.intents_command == "resolve":
                return run_intents_resolve(
                    settings, intent_id=args.intent_id, settlement_ref=args.settlement_ref
                )
            if args.intents_command == "abandon":
                return run_intents_abandon(settings, intent_id=args.intent_id)
    except (TimelockError, ConfigurationError) as exc:
        kind = exc.kind if isinstance(exc, TimelockError) else "ConfigurationError"
        details = exc.details() if isinstance(exc, TimelockError) else {}
        logger.error("command_failed", extra={"extra": {"command": args.command, "kind": kind}})
        _print({"error": {"kind": kind, "message": str(exc), **details}}, stream=sys.stderr)
        return 1

    parser.error(f"unknown command {args.command!r}")
    return 2


def _load_settings(env_file: str | None, *, db_override: str | None = None) -> Settings:
    try:
        if env_file:
            settings = Settings(_env_file=env_file)
        else:
            settings = Settings()
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    if db_override:
        settings = settings.model_copy(update={"state_db_path": db_override})
    return settings


def _print(payload: object, *, stream=None) -> None:
    print(json.dumps(redact_data(payload), sort_keys=True, default=str), file=stream or sys.stdout)


def _ledger(settings: Settings) -> LedgerStore:
    return LedgerStore(UnitOfWorkFactory(settings.state_db_path))


@contextmanager
def _reconcile_service(settings: Settings) -> Iterator[ReconcileService]:
    client = build_settlement_client(settings)
    try:
        orchestrator = TransactionOrchestrator(
            _ledger(settings),
            client,
            lock_holder_address=settings.effective_lock_holder(),
        )
        yield ReconcileService(orchestrator)
    finally:
        client.close()


def _intent_payload(intent: SettlementIntent) -> dict[str, object]:
    payload = asdict(intent)
    payload["kind"] = str(intent.kind)
    payload["status"] = str(intent.status)
    return payload


def run_serve(settings: Settings, *, host: str | None = None, port: int | None = None) -> int:
    import uvicorn

    from timelock.api.app import create_app

    app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_config=None,
    )
    return 0


def run_stats(settings: Settings) -> int:
    stats = StatsService(_ledger(settings)).snapshot()
    _print(StatsView.from_stats(stats).model_dump(by_alias=True, mode="json"))
    return 0


def run_accounts(settings: Settings, *, owner: str | None = None) -> int:
    ledger = _ledger(settings)
    records = ledger.list_by_owner(owner) if owner else ledger.list_all()
    _print([AccountView.from_record(record).model_dump(by_alias=True, mode="json") for record in records])
    return 0


def run_schedule(settings: Settings) -> int:
    _print(ScheduleView.from_schedule(_ledger(settings).schedule).model_dump(by_alias=True, mode="json"))
    return 0


def run_reconcile(settings: Settings) -> int:
    with _reconcile_service(settings) as service:
        result = service.run()
    _print(result.as_dict())
    return 0 if not result.still_pending and not result.needs_operator else 3


def run_intents_list(settings: Settings, *, statuses: Sequence[str]) -> int:
    intents = IntentJournal(_ledger(settings)).list(*(IntentStatus(status) for status in statuses))
    _print([_intent_payload(intent) for intent in intents])
    return 0


def run_intents_resolve(settings: Settings, *, intent_id: str, settlement_ref: str) -> int:
    with _reconcile_service(settings) as service:
        intent = service.resolve(intent_id, settlement_ref)
    _print(_intent_payload(intent))
    return 0


def run_intents_abandon(settings: Settings, *, intent_id: str) -> int:
    with _reconcile_service(settings) as service:
        intent = service.abandon(intent_id)
    _print(_intent_payload(intent))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
