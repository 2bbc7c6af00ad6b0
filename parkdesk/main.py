# File: parkdesk/main.py
"""
Main application entry point for the Parking Desk
Wires the services from the environment and exposes the desk operations
as a command line
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from .domain.models import ParkDeskError
from .application.commands import (
    RegisterEntryCommand, RegisterExitCommand, CancelSessionCommand, SaveTariffsCommand
)
from .application.dtos import SessionListDTO, FeeQuoteDTO
from .application.receipts import format_currency
from .infrastructure.config import AppConfig
from .infrastructure.factories import ServiceFactory, ParkDeskApp
from .infrastructure.providers import ManualClock
from .infrastructure.repositories import DocumentStoreError, RepositoryFactory


def setup_logging(config: AppConfig):
    """Setup application logging configuration"""
    log_dir = config.log_dir
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, 'parkdesk.log')),
            logging.StreamHandler(sys.stderr)
        ]
    )
    return logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="parkdesk", description="Parking desk operations")
    sub = parser.add_subparsers(dest="action", required=True)

    sub.add_parser("seed", help="Store the default tariffs if none exist")
    sub.add_parser("tariffs", help="Show the tariff table")

    set_tariffs = sub.add_parser("set-tariffs", help="Replace the tariff table from a JSON file")
    set_tariffs.add_argument("path", help="JSON object mapping category to rule")

    entry = sub.add_parser("entry", help="Register a vehicle entry")
    entry.add_argument("plate")
    entry.add_argument("category")
    entry.add_argument("--size", choices=["small", "medium", "large"])
    entry.add_argument("--agreed-price", type=int)
    entry.add_argument("--owner")

    exit_ = sub.add_parser("exit", help="Bill and register a vehicle exit")
    exit_.add_argument("plate")
    exit_.add_argument("--adjustment", type=int, default=0, help="Signed special-client adjustment")
    exit_.add_argument("--manual-total", type=int, help="Replace the computed total")

    cancel = sub.add_parser("cancel", help="Remove a vehicle without billing")
    cancel.add_argument("plate")

    quote = sub.add_parser("quote", help="Show the current charge for a parked vehicle")
    quote.add_argument("plate")

    listing = sub.add_parser("list", help="List vehicles on the lot")
    listing.add_argument("--category")
    listing.add_argument("--search")

    receipts = sub.add_parser("receipts", help="List settled receipts")
    receipts.add_argument("--plate")

    sub.add_parser("demo", help="Run an entry and exit against an in-memory store")
    return parser


class ParkDeskCLI:
    """Runs one desk operation per invocation"""

    def __init__(self, app: ParkDeskApp, out=None):
        self.app = app
        self.out = out or sys.stdout
        self.logger = logging.getLogger(self.__class__.__name__)

    def run(self, args: argparse.Namespace) -> int:
        handler = getattr(self, f"do_{args.action.replace('-', '_')}")
        return handler(args)

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def _report(self, result: Dict[str, Any]) -> int:
        self._print(f"[{result['level']}] {result['message']}")
        data = result.get("data") or {}
        if data.get("text"):
            self._print(data["text"])
        return 0 if result["success"] else 1

    def do_seed(self, args) -> int:
        seeded = self.app.tariff_service.seed_defaults()
        self._print("Default tariffs stored" if seeded else "Tariffs already configured")
        return 0

    def do_tariffs(self, args) -> int:
        table = self.app.tariff_service.snapshot()
        if not table:
            self._print("No tariffs configured; run 'parkdesk seed'")
            return 1
        for category in sorted(table):
            rule = table[category]
            price = getattr(rule, "amount", None)
            if price is None:
                price = getattr(rule, "hourly_price")
                text = f"{format_currency(price, self.app.config.currency)} / hora"
            else:
                text = format_currency(price, self.app.config.currency)
            self._print(f"{category:20} {text:24} {rule.label}")
        return 0

    def do_set_tariffs(self, args) -> int:
        try:
            with open(args.path, encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError) as e:
            self._print(f"[error] Could not read tariffs from {args.path}: {e}")
            return 1
        return self._report(self.app.processor.process(SaveTariffsCommand(raw)))

    def do_entry(self, args) -> int:
        request = {
            "plate": args.plate,
            "category": args.category,
            "size": args.size,
            "agreed_price": args.agreed_price,
            "owner_ref": args.owner,
        }
        return self._report(self.app.processor.process(RegisterEntryCommand(request)))

    def do_exit(self, args) -> int:
        request = {
            "plate": args.plate,
            "adjustment": args.adjustment,
            "manual_total": args.manual_total,
        }
        return self._report(self.app.processor.process(RegisterExitCommand(request)))

    def do_cancel(self, args) -> int:
        return self._report(self.app.processor.process(CancelSessionCommand(args.plate)))

    def do_quote(self, args) -> int:
        fee = self.app.parking_service.preview_fee(args.plate)
        quote = FeeQuoteDTO.from_fee(args.plate.strip().upper(), fee)
        self._print(
            f"{quote.plate}: {quote.stay_duration_text}, "
            f"{format_currency(quote.original_cost, self.app.config.currency)}"
        )
        return 0

    def do_list(self, args) -> int:
        service = self.app.parking_service
        if args.category:
            sessions = service.filter_by_category(args.category)
        elif args.search:
            sessions = service.search(args.search)
        else:
            sessions = service.list_active()

        listing = SessionListDTO.from_sessions(sessions)
        builder = self.app.receipt_builder
        for item in listing.items:
            self._print(f"{item.plate:10} {item.category:14} {builder.format_timestamp(item.entry_timestamp)}")
        self._print(f"{listing.total} vehicle(s)")
        return 0

    def do_receipts(self, args) -> int:
        builder = self.app.receipt_builder
        for receipt in self.app.parking_service.list_receipts(args.plate):
            self._print(
                f"{builder.format_timestamp(receipt.exit_timestamp)} {receipt.plate:10} "
                f"{receipt.stay_duration_text:>8} {builder.format_currency(receipt.final_cost)}"
            )
        return 0

    def do_demo(self, args) -> int:
        """Entry at a fixed instant, exit 45 minutes later"""
        clock = self.app.parking_service.clock
        if isinstance(clock, ManualClock):
            clock.set(1_700_000_000_000)
        self.app.tariff_service.seed_defaults()
        status = self._report(self.app.processor.process(RegisterEntryCommand({"plate": "abc123", "category": "car"})))
        if isinstance(clock, ManualClock):
            clock.advance(minutes=45)
        return status or self._report(self.app.processor.process(RegisterExitCommand({"plate": "ABC123"})))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    try:
        config = AppConfig.from_env()
    except ParkDeskError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1
    logger = setup_logging(config)

    factory = ServiceFactory(config)
    app = None
    try:
        if args.action == "demo":
            app = factory.create_app(store=RepositoryFactory.create_in_memory_store(), clock=ManualClock())
        else:
            app = factory.create_app()
        app.start(watch=False)
        return ParkDeskCLI(app).run(args)
    except (ParkDeskError, DocumentStoreError) as e:
        logger.error(str(e))
        print(f"[error] {e}", file=sys.stderr)
        return 1
    finally:
        if app is not None:
            app.close()


if __name__ == "__main__":
    sys.exit(main())
