# File: parkdesk/domain/strategies.py
"""
Strategy Pattern Implementation for Fee Calculation

Each tariff rule variant is priced by its own strategy. The FeeCalculator
domain service selects the strategy for a session's category and turns the
elapsed time into a FeeResult.

Pricing Strategies:
1. HalfHourPricingStrategy - 30-minute blocks, partial blocks billed in full
2. PerMinutePricingStrategy - legacy mode, free under 30 minutes
3. FlatRatePricingStrategy - fixed amount regardless of duration
4. NegotiatedPricingStrategy - per-session agreed price

The calculator is pure: no I/O, no mutation of the session or the table,
so it is safe to call concurrently.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict
import logging
import math

from .models import (
    TariffRule, TariffTable,
    RateKind, FeeResult, InvalidDuration, is_negotiated
)
from .aggregates import ParkingSession


MS_PER_MINUTE = 60 * 1000
BLOCK_MINUTES = 30
LEGACY_FREE_MINUTES = 30


# ============================================================================
# DURATION HELPERS
# ============================================================================

def billable_minutes(entry_timestamp: int, exit_timestamp: int) -> int:
    """Elapsed minutes between two instants, partial minutes rounded up"""
    duration_ms = exit_timestamp - entry_timestamp
    if duration_ms < 0:
        raise InvalidDuration(entry_timestamp, exit_timestamp)
    return math.ceil(duration_ms / MS_PER_MINUTE)


def half_hour_blocks(duration_minutes: int) -> int:
    return math.ceil(duration_minutes / BLOCK_MINUTES)


def format_stay_duration(duration_minutes: int) -> str:
    """Render a duration as '{hours}h {minutes}m'"""
    hours, minutes = divmod(duration_minutes, 60)
    return f"{hours}h {minutes}m"


# ============================================================================
# STRATEGY INTERFACE
# ============================================================================

class PricingStrategy(ABC):
    """
    Abstract base class for pricing strategies
    Defines the interface for fee calculation algorithms
    """

    rate_kind: RateKind = RateKind.UNKNOWN

    @abstractmethod
    def calculate_cost(
        self,
        rule: Optional[TariffRule],
        session: ParkingSession,
        duration_minutes: int
    ) -> int:
        """
        Calculate the cost of a stay
        Returns: amount in the smallest currency unit
        """
        pass

    def get_strategy_name(self) -> str:
        return self.__class__.__name__.replace("PricingStrategy", "")

    def __str__(self) -> str:
        return f"{self.get_strategy_name()} Strategy"


# ============================================================================
# PRICING STRATEGIES
# ============================================================================

class HalfHourPricingStrategy(PricingStrategy):
    """A stay of one minute bills one full block"""

    rate_kind = RateKind.HALF_HOUR

    def calculate_cost(self, rule, session, duration_minutes) -> int:
        return half_hour_blocks(duration_minutes) * rule.half_hour_price


class PerMinutePricingStrategy(PricingStrategy):
    """
    Legacy per-minute rate family
    Stays under 30 minutes are free; longer stays bill half-hour blocks
    of per_minute_price * 30
    """

    rate_kind = RateKind.PER_MINUTE

    def calculate_cost(self, rule, session, duration_minutes) -> int:
        if duration_minutes < LEGACY_FREE_MINUTES:
            return 0
        return half_hour_blocks(duration_minutes) * rule.block_price


class FlatRatePricingStrategy(PricingStrategy):
    """Fixed amount regardless of duration"""

    rate_kind = RateKind.FLAT

    def calculate_cost(self, rule, session, duration_minutes) -> int:
        return rule.amount


class NegotiatedPricingStrategy(PricingStrategy):
    """The session's agreed price always overrides the table"""

    rate_kind = RateKind.FLAT

    def calculate_cost(self, rule, session, duration_minutes) -> int:
        return session.agreed_price or 0


# ============================================================================
# FEE CALCULATOR (Domain Service)
# ============================================================================

class FeeCalculator:
    """
    Domain Service: maps (session, tariff table, exit time) to a FeeResult
    Stateless apart from the strategy registry, which is never mutated
    after construction
    """

    def __init__(self, strategies: Optional[Dict[RateKind, PricingStrategy]] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._strategies: Dict[RateKind, PricingStrategy] = strategies or {
            RateKind.HALF_HOUR: HalfHourPricingStrategy(),
            RateKind.PER_MINUTE: PerMinutePricingStrategy(),
            RateKind.FLAT: FlatRatePricingStrategy(),
        }
        self._negotiated = NegotiatedPricingStrategy()

    def compute_fee(
        self,
        session: ParkingSession,
        tariff_table: TariffTable,
        exit_timestamp: int
    ) -> FeeResult:
        """
        Compute the fee for a stay

        Raises InvalidDuration when the exit precedes the entry. An unknown
        category is not an error: it bills zero and is flagged through
        category_known so the caller can warn an operator.
        """
        duration_minutes = billable_minutes(session.entry_timestamp, exit_timestamp)
        stay_text = format_stay_duration(duration_minutes)

        if is_negotiated(session.category):
            cost = self._negotiated.calculate_cost(None, session, duration_minutes)
            return FeeResult(
                original_cost=cost,
                stay_duration_text=stay_text,
                is_flat_rate=True,
                rate_kind=RateKind.FLAT,
                duration_minutes=duration_minutes,
                rate_label=self._negotiated_label(session),
            )

        rule = tariff_table.lookup(session.category)
        strategy = self._strategies.get(rule.kind) if rule is not None else None
        if strategy is None:
            self.logger.debug(f"No tariff rule for category '{session.category}'")
            return FeeResult(
                original_cost=0,
                stay_duration_text=stay_text,
                is_flat_rate=False,
                rate_kind=RateKind.UNKNOWN,
                duration_minutes=duration_minutes,
                category_known=False,
            )

        cost = strategy.calculate_cost(rule, session, duration_minutes)
        return FeeResult(
            original_cost=cost,
            stay_duration_text=stay_text,
            is_flat_rate=rule.is_flat_rate,
            rate_kind=strategy.rate_kind,
            duration_minutes=duration_minutes,
            rate_label=getattr(rule, "label", ""),
        )

    @staticmethod
    def _negotiated_label(session: ParkingSession) -> str:
        period = "Mensualidad" if session.category == "other-month" else "Por Noche"
        if session.size:
            return f"{period} - {session.size}"
        return period


def compute_fee(
    session: ParkingSession,
    tariff_table: TariffTable,
    exit_timestamp: int
) -> FeeResult:
    """Module-level shortcut using the default strategy registry"""
    return _DEFAULT_CALCULATOR.compute_fee(session, tariff_table, exit_timestamp)


_DEFAULT_CALCULATOR = FeeCalculator()
