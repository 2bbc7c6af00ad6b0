# File: parkdesk/application/receipts.py
"""
Receipt construction and formatting

ReceiptBuilder turns a session and its fee into an immutable Receipt. The
formatting helpers render amounts and instants the way the desk prints
them ("$30.000 COP", day/month/year in the lot's timezone).
"""

from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from ..domain.models import FeeResult, Receipt, ValidationError
from ..domain.aggregates import ParkingSession

DEFAULT_CURRENCY = "COP"
DEFAULT_TIMEZONE = "America/Bogota"
TIMESTAMP_FORMAT = "%d/%m/%Y %H:%M:%S"

logger = logging.getLogger(__name__)


# ============================================================================
# FORMATTING HELPERS
# ============================================================================

def format_number(amount: int) -> str:
    """Group thousands with '.' as in es-CO"""
    return f"{amount:,}".replace(",", ".")


def format_currency(amount: int, currency: str = DEFAULT_CURRENCY) -> str:
    if amount < 0:
        return f"-${format_number(-amount)} {currency}"
    return f"${format_number(amount)} {currency}"


def format_signed_currency(amount: int, currency: str = DEFAULT_CURRENCY) -> str:
    """Adjustment amounts always carry their sign"""
    if amount < 0:
        return format_currency(amount, currency)
    return f"+{format_currency(amount, currency)}"


def resolve_timezone(tz: Optional[str]):
    if not tz or tz.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz}', using UTC")
        return timezone.utc


def format_timestamp(timestamp_ms: int, tz: Optional[str] = DEFAULT_TIMEZONE) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=resolve_timezone(tz))
    return moment.strftime(TIMESTAMP_FORMAT)


# ============================================================================
# RECEIPT BUILDER
# ============================================================================

class ReceiptBuilder:
    """
    Builds receipts and their printable text

    final_cost is max(0, original_cost + adjustment), or max(0, manual_total)
    when the operator typed the total; the two are never combined.
    """

    def __init__(self, currency: str = DEFAULT_CURRENCY, tz: str = DEFAULT_TIMEZONE):
        self.currency = currency
        self.tz = tz

    def build(
        self,
        session: ParkingSession,
        fee_result: FeeResult,
        exit_timestamp: int,
        adjustment: int = 0,
        manual_total: Optional[int] = None
    ) -> Receipt:
        for name, value in (("adjustment", adjustment), ("manual_total", manual_total)):
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(f"{name} must be an integer amount, got: {value!r}")

        if manual_total is not None:
            final_cost = max(0, manual_total)
            adjustment = 0
        else:
            final_cost = max(0, fee_result.original_cost + adjustment)

        return Receipt(
            session_id=session.id,
            plate=session.plate,
            category=session.category,
            entry_timestamp=session.entry_timestamp,
            exit_timestamp=exit_timestamp,
            stay_duration_text=fee_result.stay_duration_text,
            duration_minutes=fee_result.duration_minutes,
            original_cost=fee_result.original_cost,
            special_adjustment=adjustment,
            manual_total=manual_total,
            final_cost=final_cost,
            is_flat_rate=fee_result.is_flat_rate,
            rate_kind=fee_result.rate_kind,
            rate_label=fee_result.rate_label,
            category_known=fee_result.category_known,
            owner_ref=session.owner_ref,
            size=session.size,
        )

    def format_currency(self, amount: int) -> str:
        return format_currency(amount, self.currency)

    def format_timestamp(self, timestamp_ms: int) -> str:
        return format_timestamp(timestamp_ms, self.tz)

    def render_lines(self, receipt: Receipt) -> List[str]:
        lines = [
            f"Placa: {receipt.plate}",
            f"Tipo: {receipt.category}",
        ]
        if receipt.rate_label:
            lines.append(f"Tarifa: {receipt.rate_label}")
        lines += [
            f"Entrada: {self.format_timestamp(receipt.entry_timestamp)}",
            f"Salida: {self.format_timestamp(receipt.exit_timestamp)}",
            f"Tiempo de Estadía: {receipt.stay_duration_text}",
        ]
        if not receipt.is_flat_rate:
            lines.append(f"Costo Original: {self.format_currency(receipt.original_cost)}")
        if receipt.special_adjustment != 0:
            lines.append(
                f"Ajuste Especial: {format_signed_currency(receipt.special_adjustment, self.currency)}"
            )
        if receipt.has_manual_override:
            lines.append(f"Total Manual: {self.format_currency(receipt.manual_total)}")
        if not receipt.category_known:
            lines.append("ADVERTENCIA: categoría sin tarifa configurada")
        lines.append(f"TOTAL A PAGAR: {self.format_currency(receipt.final_cost)}")
        return lines

    def render_text(self, receipt: Receipt) -> str:
        return "\n".join(self.render_lines(receipt))
