#!/usr/bin/env python3
"""
Command Pattern Unit Tests

Tests for desk commands, their notification results and undo support.
"""

import unittest
from unittest.mock import Mock, patch

from parkdesk.domain.models import default_tariffs
from parkdesk.application.commands import (
    CommandContext, CommandProcessor, RegisterEntryCommand, RegisterExitCommand,
    CancelSessionCommand, SaveTariffsCommand, SUCCESS, WARNING, ERROR
)
from parkdesk.application.dtos import EntryRequestDTO
from parkdesk.application.parking_service import ParkingService
from parkdesk.application.receipts import ReceiptBuilder
from parkdesk.application.tariff_service import TariffService
from parkdesk.infrastructure.repositories import (
    InMemoryDocumentStore, TariffRepository, SessionRepository, ReceiptRepository,
    DocumentStoreError
)
from parkdesk.infrastructure.providers import ManualClock

T0 = 1_700_000_000_000


class CommandTestCase(unittest.TestCase):
    """Shared fixture: wired services behind a command processor"""

    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.clock = ManualClock(T0)
        self.tariffs = TariffService(TariffRepository(self.store))
        self.tariffs.seed_defaults()

        self.builder = ReceiptBuilder(currency="COP", tz="UTC")
        self.parking = ParkingService(
            SessionRepository(self.store),
            ReceiptRepository(self.store),
            self.tariffs,
            receipt_builder=self.builder,
            clock=self.clock,
        )
        self.context = CommandContext(self.parking, self.tariffs, self.builder)
        self.processor = CommandProcessor(self.context)

    def enter(self, plate="ABC123", category="car", **extra):
        request = {"plate": plate, "category": category}
        request.update(extra)
        return self.processor.process(RegisterEntryCommand(request))


class TestRegisterEntryCommand(CommandTestCase):
    """Unit tests for RegisterEntryCommand"""

    def test_successful_entry(self):
        """Test entry result carries the new session id"""
        result = self.enter(plate="abc123")

        self.assertTrue(result["success"])
        self.assertEqual(result["level"], SUCCESS)
        self.assertEqual(result["data"]["plate"], "ABC123")
        self.assertEqual(self.parking.get_session("ABC123").id, result["data"]["session_id"])
        self.assertIn("command_id", result)

    def test_accepts_dto(self):
        request = EntryRequestDTO(plate="xyz9", category="bike")
        result = self.processor.process(RegisterEntryCommand(request, executed_by="desk-2"))

        self.assertTrue(result["success"])
        self.assertEqual(self.parking.get_session("XYZ9").owner_ref, "desk-2")

    def test_duplicate_entry_is_an_error_result(self):
        """Test domain errors become error results"""
        self.enter()
        result = self.enter()

        self.assertFalse(result["success"])
        self.assertEqual(result["level"], ERROR)
        self.assertIn("already parked", result["message"])
        self.assertEqual(len(self.processor.command_history), 1)

    def test_invalid_requests(self):
        """Test malformed requests fail validation without touching the store"""
        invalid_requests = [
            {"plate": "", "category": "car"},
            {"plate": "ABC123"},
            {"plate": "ABC123", "category": "   "},
            {"plate": "ABC123", "category": "other-month", "size": "huge", "agreed_price": 1},
            {"plate": "ABC123", "category": "other-month", "size": "small", "agreed_price": -5},
        ]
        for request in invalid_requests:
            result = self.processor.process(RegisterEntryCommand(request))
            self.assertFalse(result["success"], msg=f"request={request}")
            self.assertTrue(result["message"].startswith("Validation failed"), msg=result["message"])

        self.assertEqual(self.parking.list_active(), [])

    def test_missing_negotiated_price(self):
        result = self.enter(category="other-month", size="small")
        self.assertFalse(result["success"])
        self.assertIn("agreed price", result["message"])

    def test_undo_cancels_session(self):
        """Test undoing an entry removes the vehicle"""
        self.enter()
        result = self.processor.undo_last()

        self.assertTrue(result["success"])
        self.assertEqual(self.parking.list_active(), [])
        self.assertEqual(self.processor.undo_last()["message"], "Nothing to undo")

    def test_unexpected_error(self):
        """Test unexpected exceptions are reported without details"""
        parking = Mock()
        parking.register_entry.side_effect = RuntimeError("boom")
        context = CommandContext(parking, self.tariffs, self.builder)

        result = RegisterEntryCommand({"plate": "ABC123", "category": "car"}).execute(context)

        self.assertFalse(result["success"])
        self.assertEqual(result["message"], "Unexpected error, see logs for details")


class TestRegisterExitCommand(CommandTestCase):
    """Unit tests for RegisterExitCommand"""

    def test_exit_returns_receipt_and_text(self):
        """Test the 45 minute car scenario through the command layer"""
        self.enter()
        self.clock.advance(minutes=45)

        result = self.processor.process(RegisterExitCommand({"plate": "ABC123"}))

        self.assertTrue(result["success"])
        self.assertEqual(result["level"], SUCCESS)
        self.assertIn("$6.000 COP", result["message"])
        receipt = result["data"]["receipt"]
        self.assertEqual(receipt["final_cost"], 6000)
        self.assertEqual(receipt["final_cost_text"], "$6.000 COP")
        self.assertEqual(receipt["stay_duration_text"], "0h 45m")
        self.assertTrue(result["data"]["text"].endswith("TOTAL A PAGAR: $6.000 COP"))

    def test_adjustment_and_manual_total(self):
        self.enter(plate="AAA111")
        self.enter(plate="BBB222")
        self.clock.advance(minutes=45)

        adjusted = self.processor.process(RegisterExitCommand({"plate": "AAA111", "adjustment": -1000}))
        manual = self.processor.process(RegisterExitCommand({"plate": "BBB222", "manual_total": 2000}))

        self.assertEqual(adjusted["data"]["receipt"]["final_cost"], 5000)
        self.assertEqual(manual["data"]["receipt"]["final_cost"], 2000)
        self.assertIn("Total Manual: $2.000 COP", manual["data"]["text"])

    def test_unknown_category_is_a_warning(self):
        """Test exit for an unpriced category succeeds with a warning"""
        self.enter(category="truck")
        self.clock.advance(minutes=90)

        result = self.processor.process(RegisterExitCommand({"plate": "ABC123"}))

        self.assertTrue(result["success"])
        self.assertEqual(result["level"], WARNING)
        self.assertEqual(result["data"]["receipt"]["final_cost"], 0)
        self.assertFalse(result["data"]["receipt"]["category_known"])

    def test_missing_session(self):
        result = self.processor.process(RegisterExitCommand({"plate": "NOPE1"}))
        self.assertFalse(result["success"])
        self.assertIn("No active session", result["message"])

    def test_invalid_amounts(self):
        self.enter()
        result = self.processor.process(RegisterExitCommand({"plate": "ABC123", "adjustment": 1.5}))
        self.assertFalse(result["success"])
        self.assertTrue(result["message"].startswith("Validation failed"))

    def test_store_failure_keeps_receipt(self):
        """Test a failed close reports the computed receipt and keeps the vehicle"""
        self.enter()
        self.clock.advance(minutes=45)

        with patch.object(self.store, "delete", side_effect=DocumentStoreError("timeout")):
            result = self.processor.process(RegisterExitCommand({"plate": "ABC123"}))

        self.assertFalse(result["success"])
        self.assertEqual(result["level"], ERROR)
        self.assertEqual(result["data"]["receipt"]["final_cost"], 6000)
        self.assertEqual(self.parking.get_session("ABC123").plate, "ABC123")

        retry = self.processor.process(RegisterExitCommand({"plate": "ABC123"}))
        self.assertTrue(retry["success"])
        self.assertEqual(len(self.parking.list_receipts()), 1)

    def test_exit_cannot_be_undone(self):
        self.enter()
        command = RegisterExitCommand({"plate": "ABC123"})
        self.processor.process(command)

        self.assertFalse(command.can_undo())
        self.assertIn("cannot be undone", command.undo(self.context)["message"])


class TestCancelSessionCommand(CommandTestCase):
    """Unit tests for CancelSessionCommand"""

    def test_cancel(self):
        self.enter()
        result = self.processor.process(CancelSessionCommand(" abc123 "))

        self.assertTrue(result["success"])
        self.assertEqual(result["data"], {"plate": "ABC123"})
        self.assertEqual(self.parking.list_active(), [])

    def test_blank_plate(self):
        result = self.processor.process(CancelSessionCommand(""))
        self.assertFalse(result["success"])
        self.assertIn("License plate is required", result["message"])

    def test_cancel_missing(self):
        result = self.processor.process(CancelSessionCommand("ABC123"))
        self.assertFalse(result["success"])
        self.assertEqual(result["level"], ERROR)


class TestSaveTariffsCommand(CommandTestCase):
    """Unit tests for SaveTariffsCommand"""

    def test_save_and_undo(self):
        """Test saving replaces the table and undo restores the previous one"""
        result = self.processor.process(SaveTariffsCommand({"car": {"half_hour_price": 3500}}))

        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["tariffs"]["car"]["half_hour_price"], 3500)
        self.assertEqual(len(self.tariffs.snapshot()), 1)

        undo = self.processor.undo_last()
        self.assertTrue(undo["success"])
        self.assertEqual(self.tariffs.snapshot(), default_tariffs())

    def test_invalid_table_is_rejected(self):
        result = self.processor.process(SaveTariffsCommand({"car": {"half_hour_price": -1}}))

        self.assertFalse(result["success"])
        self.assertEqual(self.tariffs.snapshot(), default_tariffs())
        self.assertEqual(self.processor.get_history(), [])


class TestCommandProcessor(CommandTestCase):
    """Unit tests for CommandProcessor"""

    def test_batch_and_history(self):
        results = self.processor.process_batch([
            RegisterEntryCommand({"plate": "AAA111", "category": "car"}),
            RegisterEntryCommand({"plate": "AAA111", "category": "car"}),
            CancelSessionCommand("AAA111"),
        ])

        self.assertEqual([r["success"] for r in results], [True, False, True])
        history = self.processor.get_history()
        self.assertEqual(
            [entry["command_type"] for entry in history],
            ["RegisterEntryCommand", "CancelSessionCommand"]
        )
        self.assertIsNotNone(history[0]["executed_at"])

        self.processor.clear_history()
        self.assertEqual(self.processor.get_history(), [])

    def test_history_is_bounded(self):
        processor = CommandProcessor(self.context, max_history_size=2)
        for price in (1000, 2000, 3000):
            processor.process(SaveTariffsCommand({"car": {"half_hour_price": price}}))

        self.assertEqual(len(processor.command_history), 2)

    def test_failed_undo_keeps_command(self):
        """Test an entry whose session already left cannot be undone"""
        self.enter()
        self.processor.process(RegisterExitCommand({"plate": "ABC123"}))

        result = self.processor.undo_last()

        self.assertFalse(result["success"])
        self.assertTrue(result["message"].startswith("Undo failed"))
        self.assertEqual(len(self.processor.command_history), 2)

    def test_undo_spares_later_session_for_same_plate(self):
        """Test undoing an old entry never cancels the vehicle's newer session"""
        self.enter()
        self.clock.advance(minutes=30)
        self.processor.process(RegisterExitCommand({"plate": "ABC123"}))

        other_desk = ParkingService(
            SessionRepository(self.store), ReceiptRepository(self.store), self.tariffs, clock=self.clock
        )
        new_session_id = other_desk.register_entry("ABC123", "bike")

        result = self.processor.undo_last()

        self.assertFalse(result["success"])
        self.assertIn("no longer active", result["message"])
        self.assertEqual(self.parking.get_session("ABC123").id, new_session_id)


if __name__ == '__main__':
    unittest.main()
