# File: parkdesk/application/commands.py
"""
Command Pattern Implementation for the Parking Desk

This module implements the Command Pattern to encapsulate desk operations
as first-class objects. Each command represents an operator action that
can be executed, validated, undone, and logged.

Every command returns a result dictionary the UI can show directly:
    success  - whether the operation went through
    level    - notification level: success, warning or error
    message  - operator-facing text
    data     - payload (session id, receipt, tariff table)

Command Types:
1. Session Commands - Vehicle entry, exit, cancellation
2. Admin Commands - Tariff table changes
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
import logging
import uuid

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import ParkDeskError, TariffTable
from .dtos import (
    EntryRequestDTO, ExitRequestDTO, ReceiptDTO, TariffTableDTO,
    describe_validation_error
)
from .errors import PersistenceFailure
from .parking_service import ParkingService
from .tariff_service import TariffService
from .receipts import ReceiptBuilder

SUCCESS = "success"
WARNING = "warning"
ERROR = "error"


@dataclass
class CommandContext:
    """Services a command may act on"""
    parking: ParkingService
    tariffs: TariffService
    receipt_builder: ReceiptBuilder


# ============================================================================
# COMMAND INTERFACES AND BASE CLASSES
# ============================================================================

class Command(ABC):
    """
    Abstract base class for all commands

    A command represents an intent to change the system state.
    Domain errors become error results; they never escape execute().
    """

    def __init__(self, command_id: Optional[str] = None, executed_by: Optional[str] = None):
        self.command_id = command_id or str(uuid.uuid4())
        self.executed_at: Optional[datetime] = None
        self.executed_by = executed_by
        self.logger = logging.getLogger(self.__class__.__name__)

    def execute(self, context: CommandContext) -> Dict[str, Any]:
        """Validate and run the command, returning a notification result"""
        is_valid, errors = self.validate()
        if not is_valid:
            return self._result(False, ERROR, f"Validation failed: {'; '.join(errors)}")

        try:
            result = self._run(context)
            self.executed_at = datetime.now()
            return result
        except PersistenceFailure as e:
            self.logger.error(f"Store failure in {self.get_description()}: {e}")
            data = None
            if e.receipt is not None:
                data = {"receipt": ReceiptDTO.from_receipt(e.receipt).to_dict()}
            return self._result(False, ERROR, f"Could not save changes, please retry: {e}", data)
        except ParkDeskError as e:
            self.logger.info(f"{self.get_description()} rejected: {e}")
            return self._result(False, ERROR, str(e))
        except Exception as e:
            self.logger.error(f"Error executing {self.get_description()}: {e}", exc_info=True)
            return self._result(False, ERROR, "Unexpected error, see logs for details")

    @abstractmethod
    def _run(self, context: CommandContext) -> Dict[str, Any]:
        pass

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate command parameters before execution

        Returns: (is_valid, error_messages)
        """
        return True, []

    def can_undo(self) -> bool:
        return False

    def undo(self, context: CommandContext) -> Dict[str, Any]:
        if not self.can_undo():
            return self._result(False, ERROR, f"{self.get_description()} cannot be undone")
        try:
            return self._undo(context)
        except ParkDeskError as e:
            return self._result(False, ERROR, f"Undo failed: {e}")
        except Exception as e:
            self.logger.error(f"Error undoing {self.get_description()}: {e}", exc_info=True)
            return self._result(False, ERROR, "Unexpected error, see logs for details")

    def _undo(self, context: CommandContext) -> Dict[str, Any]:
        raise NotImplementedError

    def get_description(self) -> str:
        return self.__class__.__name__.replace("Command", "")

    def _result(
        self,
        success: bool,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "success": success,
            "level": level,
            "message": message,
            "data": data,
            "command_id": self.command_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "executed_by": self.executed_by,
        }


def _parse_request(dto_type, request):
    """Accept a DTO or a raw dict; returns (dto, errors)"""
    if isinstance(request, dto_type):
        return request, []
    try:
        return dto_type.model_validate(request), []
    except PydanticValidationError as e:
        return None, [describe_validation_error(e)]


# ============================================================================
# SESSION COMMANDS
# ============================================================================

class RegisterEntryCommand(Command):
    """
    Command: Check a vehicle in
    Can be undone by cancelling the new session
    """

    def __init__(self, request: Union[EntryRequestDTO, Mapping[str, Any]], executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.request, self._errors = _parse_request(EntryRequestDTO, request)
        self.session_id: Optional[str] = None

    def validate(self) -> Tuple[bool, List[str]]:
        return not self._errors, list(self._errors)

    def _run(self, context: CommandContext) -> Dict[str, Any]:
        request = self.request
        self.session_id = context.parking.register_entry(
            plate=request.plate,
            category=request.category,
            owner_ref=request.owner_ref or self.executed_by,
            size=request.size,
            agreed_price=request.agreed_price,
            entry_timestamp=request.entry_timestamp,
        )
        return self._result(
            True, SUCCESS,
            f"Vehicle {request.plate} registered",
            {"session_id": self.session_id, "plate": request.plate},
        )

    def can_undo(self) -> bool:
        return self.session_id is not None

    def _undo(self, context: CommandContext) -> Dict[str, Any]:
        context.parking.cancel_session(self.request.plate, session_id=self.session_id)
        self.session_id = None
        return self._result(True, SUCCESS, f"Entry for {self.request.plate} undone")

    def get_description(self) -> str:
        plate = self.request.plate if self.request else "?"
        return f"Register entry {plate}"


class RegisterExitCommand(Command):
    """
    Command: Bill and check a vehicle out
    Billing cannot be undone
    """

    def __init__(self, request: Union[ExitRequestDTO, Mapping[str, Any]], executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.request, self._errors = _parse_request(ExitRequestDTO, request)
        self.receipt = None

    def validate(self) -> Tuple[bool, List[str]]:
        return not self._errors, list(self._errors)

    def _run(self, context: CommandContext) -> Dict[str, Any]:
        request = self.request
        self.receipt = context.parking.register_exit(
            plate=request.plate,
            exit_timestamp=request.exit_timestamp,
            adjustment=request.adjustment,
            manual_total=request.manual_total,
        )

        builder = context.receipt_builder
        total = builder.format_currency(self.receipt.final_cost)
        data = {
            "receipt": ReceiptDTO.from_receipt(self.receipt, final_cost_text=total).to_dict(),
            "text": builder.render_text(self.receipt),
        }
        if not self.receipt.category_known:
            return self._result(
                True, WARNING,
                f"Category '{self.receipt.category}' has no tariff; {request.plate} billed {total}",
                data,
            )
        return self._result(True, SUCCESS, f"Exit registered for {request.plate}. Total: {total}", data)

    def get_description(self) -> str:
        plate = self.request.plate if self.request else "?"
        return f"Register exit {plate}"


class CancelSessionCommand(Command):
    """Command: Remove a vehicle without billing"""

    def __init__(self, plate: str, executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.plate = (plate or "").strip().upper()

    def validate(self) -> Tuple[bool, List[str]]:
        if not self.plate:
            return False, ["License plate is required"]
        return True, []

    def _run(self, context: CommandContext) -> Dict[str, Any]:
        context.parking.cancel_session(self.plate)
        return self._result(True, SUCCESS, f"Entry for {self.plate} cancelled", {"plate": self.plate})

    def get_description(self) -> str:
        return f"Cancel session {self.plate}"


# ============================================================================
# ADMIN COMMANDS
# ============================================================================

class SaveTariffsCommand(Command):
    """
    Command: Replace the tariff table
    Can be undone by restoring the table that was current before
    """

    def __init__(
        self,
        table: Union[TariffTable, TariffTableDTO, Mapping[str, Any]],
        executed_by: Optional[str] = None
    ):
        super().__init__(executed_by=executed_by)
        self.table = table
        self.previous: Optional[TariffTable] = None

    def _run(self, context: CommandContext) -> Dict[str, Any]:
        previous = context.tariffs.snapshot()
        saved = context.tariffs.replace_all(self.table)
        self.previous = previous
        return self._result(
            True, SUCCESS,
            f"Tariffs saved ({len(saved)} categories)",
            {"tariffs": saved.to_document()},
        )

    def can_undo(self) -> bool:
        return self.previous is not None

    def _undo(self, context: CommandContext) -> Dict[str, Any]:
        restored = context.tariffs.replace_all(self.previous)
        self.previous = None
        return self._result(
            True, SUCCESS,
            f"Previous tariffs restored ({len(restored)} categories)",
            {"tariffs": restored.to_document()},
        )


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Processes commands with features like:
    - Undo support
    - Command logging
    """

    def __init__(self, context: CommandContext, max_history_size: int = 1000):
        self.context = context
        self.logger = logging.getLogger(self.__class__.__name__)
        self.command_history: List[Command] = []
        self.max_history_size = max_history_size

    def process(self, command: Command) -> Dict[str, Any]:
        """Execute a command and record it when it succeeded"""
        self.logger.info(f"Processing command: {command.get_description()}")
        result = command.execute(self.context)

        if result.get("success", False):
            self._add_to_history(command)
        return result

    def process_batch(self, commands: List[Command]) -> List[Dict[str, Any]]:
        return [self.process(command) for command in commands]

    def undo_last(self) -> Dict[str, Any]:
        """Undo the most recent undoable command"""
        for index in range(len(self.command_history) - 1, -1, -1):
            command = self.command_history[index]
            if command.can_undo():
                result = command.undo(self.context)
                if result.get("success", False):
                    del self.command_history[index]
                return result

        return {
            "success": False,
            "level": WARNING,
            "message": "Nothing to undo",
            "data": None,
        }

    def get_history(self) -> List[Dict[str, Any]]:
        return [command.to_dict() for command in self.command_history]

    def clear_history(self) -> None:
        self.command_history.clear()

    def _add_to_history(self, command: Command) -> None:
        self.command_history.append(command)
        if len(self.command_history) > self.max_history_size:
            self.command_history.pop(0)
