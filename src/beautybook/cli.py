"""BeautyBook CLI — command-line interface for the booking engine.

Usage:
    python -m beautybook.cli status
    python -m beautybook.cli create-booking --client cli_1 --stylist sty_1 \
        --service "Box braids" --at 2026-11-01T10:00:00+00:00 --price 100.00
    python -m beautybook.cli transition --id bk_1 --role stylist --actor sty_1 --to approved
    python -m beautybook.cli capture --id bk_1 --actor cli_1
    python -m beautybook.cli open-dispute --id bk_1 --role client --actor cli_1 --reason "No show"
    python -m beautybook.cli resolve-dispute --id bk_1 --actor adm_1 --outcome cancel_and_refund
    python -m beautybook.cli wallet --party sty_1
    python -m beautybook.cli check-invariants
    python -m beautybook.cli serve --port 8000

State lives in the data directory (events.jsonl + state.json), so
successive commands operate on the same bookings. The payment
collaborator is the in-process sandbox.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from beautybook.config import DEFAULT_CONFIG_PATH, EngineConfig
from beautybook.errors import BookingError
from beautybook.models.booking import Actor, ActorRole, BookingStatus, DisputeOutcome
from beautybook.persistence.event_log import EventLog
from beautybook.persistence.state_store import StateStore
from beautybook.service import BookingService


DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(config_path: Path, data_dir: Path) -> BookingService:
    """Create a BookingService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    return BookingService(
        config=EngineConfig.load(config_path),
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        state_store=StateStore(storage_path=data_dir / "state.json"),
    )


def _service(args: argparse.Namespace) -> BookingService:
    return _make_service(args.config, args.data)


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> int:
    print(f"Failed: {message}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    _print_json(_service(args).status())
    return 0


def cmd_create_booking(args: argparse.Namespace) -> int:
    try:
        scheduled_at = datetime.fromisoformat(args.at)
        price = Decimal(args.price)
    except (ValueError, InvalidOperation) as e:
        return _fail(f"invalid argument: {e}")
    service = _service(args)
    try:
        booking = service.create_booking(
            Actor(ActorRole.CLIENT, args.client),
            stylist_id=args.stylist,
            service=args.service,
            scheduled_at=scheduled_at,
            price=price,
            currency=args.currency,
            location=args.location,
            notes=args.notes,
        )
    except (BookingError, ValueError) as e:
        return _fail(str(e))
    print(f"Created booking: {booking.booking_id} ({booking.price} {booking.currency})")
    return 0


def cmd_transition(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        booking = service.request_transition(
            args.id,
            Actor(ActorRole(args.role), args.actor),
            BookingStatus(args.to),
            expected_version=args.version,
            reason=args.reason,
        )
    except (BookingError, ValueError) as e:
        return _fail(str(e))
    print(f"Booking {booking.booking_id} is now {booking.status.value} (v{booking.version})")
    return 0


def cmd_capture(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        escrow = service.capture_payment(args.id, Actor(ActorRole(args.role), args.actor))
    except (BookingError, ValueError) as e:
        return _fail(str(e))
    print(f"Captured {escrow.amount} {escrow.currency} into escrow ({escrow.reference})")
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        booking = service.reconcile(args.id)
    except (BookingError, ValueError) as e:
        return _fail(str(e))
    print(f"Booking {booking.booking_id} is {booking.status.value}")
    return 0


def cmd_open_dispute(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        record = service.open_dispute(
            args.id, Actor(ActorRole(args.role), args.actor), args.reason,
        )
    except (BookingError, ValueError) as e:
        return _fail(str(e))
    print(f"Dispute opened on {record.booking_id} by {record.opened_by}")
    return 0


def cmd_resolve_dispute(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        booking, record = service.resolve_dispute(
            args.id,
            Actor(ActorRole.ADMIN, args.actor),
            DisputeOutcome(args.outcome),
            note=args.note,
        )
    except (BookingError, ValueError) as e:
        return _fail(str(e))
    print(f"Dispute on {booking.booking_id} resolved: {record.outcome.value} "
          f"(booking {booking.status.value})")
    return 0


def cmd_show_booking(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        booking = service.get_booking(args.id, include_archived=True)
    except BookingError as e:
        return _fail(str(e))
    data = booking.to_dict()
    if args.events:
        data["events"] = [
            {
                "event_kind": e.event_kind.value,
                "timestamp_utc": e.timestamp_utc,
                "actor_id": e.actor_id,
                "payload": e.payload,
            }
            for e in service.booking_events(args.id)
        ]
    _print_json(data)
    return 0


def cmd_wallet(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        balance = service.wallet_balance(args.party, args.currency)
        transactions, total = service.wallet_transactions(
            args.party, limit=args.limit, offset=args.offset,
        )
    except ValueError as e:
        return _fail(str(e))
    _print_json({
        "party_id": balance.party_id,
        "currency": balance.currency,
        "available": str(balance.available),
        "held": str(balance.held),
        "total_transactions": total,
        "transactions": [tx.to_dict() for tx in transactions],
    })
    return 0


def cmd_archive_expired(args: argparse.Namespace) -> int:
    archived = _service(args).archive_expired()
    print(f"Archived {len(archived)} booking(s)")
    for booking_id in archived:
        print(f"- {booking_id}")
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Audit the stored bookings against the ledger and event log."""
    violations = _service(args).check_invariants()
    if violations:
        print("Invariant check failed:")
        for violation in violations:
            print(f"- {violation}")
        return 1
    print("Invariant check passed.")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from beautybook.api import create_app

    app = create_app(_service(args))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="beautybook",
        description="BeautyBook — booking lifecycle and escrow engine CLI",
    )
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG_PATH,
        help="Path to engine parameters JSON (default: config/engine_params.json)",
    )
    parser.add_argument(
        "--data", type=Path, default=DEFAULT_DATA,
        help="Directory for events.jsonl and state.json (default: data/)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = parser.add_subparsers(dest="command")

    roles = [r.value for r in ActorRole if r != ActorRole.SYSTEM]

    # status
    sub.add_parser("status", help="Show engine status")

    # create-booking
    p_create = sub.add_parser("create-booking", help="Create a booking as a client")
    p_create.add_argument("--client", required=True, help="Client ID")
    p_create.add_argument("--stylist", required=True, help="Stylist ID")
    p_create.add_argument("--service", required=True, help="Service description")
    p_create.add_argument("--at", required=True, help="Appointment time (ISO 8601, with offset)")
    p_create.add_argument("--price", required=True, help="Price, e.g. 100.00")
    p_create.add_argument("--currency", help="Currency (default from config)")
    p_create.add_argument("--location", help="Appointment location")
    p_create.add_argument("--notes", help="Notes for the stylist")

    # transition
    p_trans = sub.add_parser("transition", help="Request a booking status transition")
    p_trans.add_argument("--id", required=True, help="Booking ID")
    p_trans.add_argument("--role", required=True, choices=roles)
    p_trans.add_argument("--actor", required=True, help="Acting party ID")
    p_trans.add_argument("--to", required=True, choices=[s.value for s in BookingStatus])
    p_trans.add_argument("--reason", help="Reason (required when disputing)")
    p_trans.add_argument("--version", type=int, help="Expected booking version")

    # capture
    p_cap = sub.add_parser("capture", help="Capture payment for an approved booking")
    p_cap.add_argument("--id", required=True, help="Booking ID")
    p_cap.add_argument("--actor", required=True, help="Paying party ID")
    p_cap.add_argument("--role", default="client", choices=roles)

    # reconcile
    p_rec = sub.add_parser("reconcile", help="Resume a pending settlement")
    p_rec.add_argument("--id", required=True, help="Booking ID")

    # open-dispute
    p_disp = sub.add_parser("open-dispute", help="Open a dispute on a booking")
    p_disp.add_argument("--id", required=True, help="Booking ID")
    p_disp.add_argument("--role", required=True, choices=["client", "stylist"])
    p_disp.add_argument("--actor", required=True, help="Disputing party ID")
    p_disp.add_argument("--reason", required=True, help="Why the booking is disputed")

    # resolve-dispute
    p_res = sub.add_parser("resolve-dispute", help="Resolve a dispute as an admin")
    p_res.add_argument("--id", required=True, help="Booking ID")
    p_res.add_argument("--actor", required=True, help="Admin ID")
    p_res.add_argument("--outcome", required=True, choices=[o.value for o in DisputeOutcome])
    p_res.add_argument("--note", help="Resolution note")

    # show-booking
    p_show = sub.add_parser("show-booking", help="Show a booking")
    p_show.add_argument("--id", required=True, help="Booking ID")
    p_show.add_argument("--events", action="store_true", help="Include the event history")

    # wallet
    p_wallet = sub.add_parser("wallet", help="Show a party's wallet")
    p_wallet.add_argument("--party", required=True, help="Party ID")
    p_wallet.add_argument("--currency", help="Currency (default from config)")
    p_wallet.add_argument("--limit", type=int, default=20)
    p_wallet.add_argument("--offset", type=int, default=0)

    # archive-expired
    sub.add_parser("archive-expired", help="Archive settled bookings past retention")

    # check-invariants
    sub.add_parser("check-invariants", help="Audit bookings against ledger and event log")

    # serve
    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--log-level", default="info")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "status": cmd_status,
        "create-booking": cmd_create_booking,
        "transition": cmd_transition,
        "capture": cmd_capture,
        "reconcile": cmd_reconcile,
        "open-dispute": cmd_open_dispute,
        "resolve-dispute": cmd_resolve_dispute,
        "show-booking": cmd_show_booking,
        "wallet": cmd_wallet,
        "archive-expired": cmd_archive_expired,
        "check-invariants": cmd_check_invariants,
        "serve": cmd_serve,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
