# File: parkdesk/domain/models.py
"""
Domain Models for the Parking Desk

This module contains:
1. Domain exceptions shared by every layer
2. Value Objects: license plates, tariff rules, tariff table snapshots
3. Computed records: fee results and receipts
4. Enums: rate kinds, session states, vehicle sizes

Amounts are integers in the smallest currency unit and timestamps are
milliseconds since the epoch, matching the persisted record shapes.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Iterator, Mapping, Union
from enum import Enum
from uuid import uuid4


# ============================================================================
# DOMAIN EXCEPTIONS
# ============================================================================

class ParkDeskError(Exception):
    """Base exception for all parking desk errors"""
    pass


class ValidationError(ParkDeskError, ValueError):
    """Malformed tariff or entry data, rejected before persistence"""
    pass


class CalculationError(ParkDeskError):
    """Fee computation could not produce a meaningful amount"""
    pass


class InvalidDuration(CalculationError):
    """Exit timestamp precedes the entry timestamp"""

    def __init__(self, entry_timestamp: int, exit_timestamp: int):
        self.entry_timestamp = entry_timestamp
        self.exit_timestamp = exit_timestamp
        super().__init__(
            f"Exit time {exit_timestamp} precedes entry time {entry_timestamp}"
        )


# ============================================================================
# ENUMS
# ============================================================================

class RateKind(str, Enum):
    """How a tariff rule bills elapsed time"""
    HALF_HOUR = "half_hour"
    PER_MINUTE = "per_minute"
    FLAT = "flat"
    UNKNOWN = "unknown"

    @property
    def is_flat(self) -> bool:
        return self == RateKind.FLAT


class SessionStatus(str, Enum):
    """Lifecycle states of a parking session"""
    ACTIVE = "active"
    SETTLED = "settled"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.SETTLED, SessionStatus.CANCELLED)


class VehicleSize(str, Enum):
    """Size tiers for vehicles in the negotiated 'other' categories"""
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @classmethod
    def parse(cls, value: Union[str, 'VehicleSize']) -> 'VehicleSize':
        if isinstance(value, VehicleSize):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValidationError(f"Unknown vehicle size '{value}'. Valid sizes: {valid}")


# Categories whose price is agreed per session instead of read from the table.
# Each maps to the suffix of its size-tier band ("other-{size}-{suffix}").
NEGOTIATED_CATEGORIES: Dict[str, str] = {
    "other-month": "month",
    "other-night": "night",
}


def is_negotiated(category: str) -> bool:
    """Check whether a category is priced by an agreed amount"""
    return category in NEGOTIATED_CATEGORIES


def band_category(category: str, size: Union[str, VehicleSize]) -> Optional[str]:
    """Tariff key of the size-tier band for a negotiated category"""
    suffix = NEGOTIATED_CATEGORIES.get(category)
    if suffix is None:
        return None
    return f"other-{VehicleSize.parse(size).value}-{suffix}"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class LicensePlate:
    """
    Value Object: License plate, normalized to trimmed uppercase
    The normalized value is the identity of an active session
    """
    value: str

    def __post_init__(self):
        if self.value is None:
            raise ValidationError("License plate cannot be empty")

        object.__setattr__(self, 'value', str(self.value).strip().upper())

        if not self.value:
            raise ValidationError("License plate cannot be empty")

    def __str__(self) -> str:
        return self.value

    @classmethod
    def normalize(cls, raw: str) -> str:
        """Return the normalized plate string"""
        return cls(raw).value


def _require_amount(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount, got: {value!r}")
    if value < 0:
        raise ValidationError(f"{name} cannot be negative: {value}")


class TariffRule:
    """
    Value Object: Base class for tariff rules
    Exactly one variant describes the pricing of a category
    """

    kind: RateKind = RateKind.UNKNOWN

    @property
    def is_flat_rate(self) -> bool:
        return self.kind.is_flat

    def to_document(self) -> Dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def from_document(data: Mapping[str, Any]) -> 'TariffRule':
        """Rebuild a rule from its persisted shape"""
        kind = data.get("kind")
        label = data.get("label", "")
        if kind == RateKind.HALF_HOUR.value:
            return HalfHourMetered(int(data["half_hour_price"]), label)
        if kind == RateKind.PER_MINUTE.value:
            return PerMinuteMetered(int(data["per_minute_price"]), label)
        if kind == RateKind.FLAT.value:
            return FlatRate(
                int(data["amount"]),
                label,
                min_amount=data.get("min_amount"),
                max_amount=data.get("max_amount"),
            )
        raise ValidationError(f"Unknown tariff rule kind: {kind!r}")


@dataclass(frozen=True)
class HalfHourMetered(TariffRule):
    """Billed in 30-minute blocks; any partial block is billed in full"""
    half_hour_price: int
    label: str = ""

    kind = RateKind.HALF_HOUR

    def __post_init__(self):
        _require_amount("half_hour_price", self.half_hour_price)

    @property
    def hourly_price(self) -> int:
        return self.half_hour_price * 2

    def to_document(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "half_hour_price": self.half_hour_price,
            "label": self.label,
        }


@dataclass(frozen=True)
class PerMinuteMetered(TariffRule):
    """
    Legacy metering: free under 30 minutes, then half-hour blocks
    priced from a per-minute base rate
    """
    per_minute_price: int
    label: str = ""

    kind = RateKind.PER_MINUTE

    def __post_init__(self):
        _require_amount("per_minute_price", self.per_minute_price)

    @property
    def hourly_price(self) -> int:
        return self.per_minute_price * 60

    @property
    def block_price(self) -> int:
        return self.per_minute_price * 30

    def to_document(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "per_minute_price": self.per_minute_price,
            "label": self.label,
        }


@dataclass(frozen=True)
class FlatRate(TariffRule):
    """
    Fixed price regardless of duration (12-hour pass, monthly pass, night band)
    Optional bounds delimit the negotiated prices for a size tier
    """
    amount: int
    label: str = ""
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None

    kind = RateKind.FLAT

    def __post_init__(self):
        _require_amount("amount", self.amount)
        if self.min_amount is not None:
            _require_amount("min_amount", self.min_amount)
        if self.max_amount is not None:
            _require_amount("max_amount", self.max_amount)
        if self.min_amount is not None and self.max_amount is not None:
            if self.min_amount > self.max_amount:
                raise ValidationError(
                    f"min_amount {self.min_amount} exceeds max_amount {self.max_amount}"
                )
            if not self.min_amount <= self.amount <= self.max_amount:
                raise ValidationError(
                    f"amount {self.amount} outside bounds {self.min_amount}-{self.max_amount}"
                )

    @property
    def has_bounds(self) -> bool:
        return self.min_amount is not None or self.max_amount is not None

    def accepts(self, price: int) -> bool:
        """Check whether a negotiated price falls within the band"""
        if self.min_amount is not None and price < self.min_amount:
            return False
        if self.max_amount is not None and price > self.max_amount:
            return False
        return True

    def to_document(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "amount": self.amount,
            "label": self.label,
        }
        if self.min_amount is not None:
            data["min_amount"] = self.min_amount
        if self.max_amount is not None:
            data["max_amount"] = self.max_amount
        return data


class TariffTable(Mapping[str, TariffRule]):
    """
    Value Object: Immutable snapshot mapping vehicle category to tariff rule
    A change always produces a new snapshot; readers never see a partial mix
    """

    def __init__(self, rules: Optional[Mapping[str, TariffRule]] = None):
        validated: Dict[str, TariffRule] = {}
        for category, rule in (rules or {}).items():
            if not isinstance(category, str) or not category.strip():
                raise ValidationError(f"Invalid tariff category: {category!r}")
            if not isinstance(rule, TariffRule):
                raise ValidationError(f"Category '{category}' does not map to a tariff rule")
            validated[category.strip()] = rule
        self._rules = validated

    def __getitem__(self, category: str) -> TariffRule:
        return self._rules[category]

    def __iter__(self) -> Iterator[str]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TariffTable):
            return self._rules == other._rules
        return NotImplemented

    def __hash__(self):
        return hash(tuple(sorted(self._rules.items(), key=lambda item: item[0])))

    def __repr__(self) -> str:
        return f"TariffTable({len(self._rules)} categories)"

    def lookup(self, category: str) -> Optional[TariffRule]:
        return self._rules.get(category)

    def with_rule(self, category: str, rule: TariffRule) -> 'TariffTable':
        """Return a new snapshot with one entry replaced"""
        rules = dict(self._rules)
        rules[category] = rule
        return TariffTable(rules)

    def to_document(self) -> Dict[str, Any]:
        return {category: rule.to_document() for category, rule in self._rules.items()}

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> 'TariffTable':
        return cls({category: TariffRule.from_document(rule) for category, rule in data.items()})


# ============================================================================
# DEFAULT TARIFFS
# ============================================================================

def default_tariffs() -> TariffTable:
    """Fixed default tariff set used on first run"""
    return TariffTable({
        "car": HalfHourMetered(3000, "Carro (por hora)"),
        "bike": HalfHourMetered(2000, "Moto (por hora)"),
        "car-12h": FlatRate(30000, "Carro (por 12 horas)"),
        "bike-12h": FlatRate(15000, "Moto (por 12 horas)"),
        "car-month": FlatRate(250000, "Mensualidad carro"),
        "bike-month": FlatRate(150000, "Mensualidad moto"),
        "other-small-month": FlatRate(120000, "Otros mensualidad (pequeño)", 100000, 150000),
        "other-medium-month": FlatRate(180000, "Otros mensualidad (mediano)", 151000, 200000),
        "other-large-month": FlatRate(250000, "Otros mensualidad (grande)", 201000, 300000),
        "other-small-night": FlatRate(12000, "Otros noche (pequeño)", 10000, 15000),
        "other-medium-night": FlatRate(18000, "Otros noche (mediano)", 15100, 20000),
        "other-large-night": FlatRate(25000, "Otros noche (grande)", 20100, 30000),
    })


# ============================================================================
# COMPUTED RECORDS
# ============================================================================

@dataclass(frozen=True)
class FeeResult:
    """Output of the fee calculator; never mutated"""
    original_cost: int
    stay_duration_text: str
    is_flat_rate: bool
    rate_kind: RateKind
    duration_minutes: int
    rate_label: str = ""
    category_known: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_cost": self.original_cost,
            "stay_duration_text": self.stay_duration_text,
            "is_flat_rate": self.is_flat_rate,
            "rate_kind": self.rate_kind.value,
            "duration_minutes": self.duration_minutes,
            "rate_label": self.rate_label,
            "category_known": self.category_known,
        }


@dataclass(frozen=True)
class Receipt:
    """
    Immutable record produced when a session is settled
    final_cost = max(0, original_cost + special_adjustment) unless a manual
    total replaces it outright

    Every exit attempt gets its own receipt_id; value equality ignores it.
    """
    session_id: str
    plate: str
    category: str
    entry_timestamp: int
    exit_timestamp: int
    stay_duration_text: str
    duration_minutes: int
    original_cost: int
    special_adjustment: int
    final_cost: int
    is_flat_rate: bool
    rate_kind: RateKind
    rate_label: str = ""
    category_known: bool = True
    manual_total: Optional[int] = None
    owner_ref: str = ""
    size: Optional[str] = None
    receipt_id: str = field(default_factory=lambda: str(uuid4()), compare=False)

    @property
    def has_manual_override(self) -> bool:
        return self.manual_total is not None

    def to_document(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plate": self.plate,
            "category": self.category,
            "entry_timestamp": self.entry_timestamp,
            "exit_timestamp": self.exit_timestamp,
            "stay_duration_text": self.stay_duration_text,
            "duration_minutes": self.duration_minutes,
            "original_cost": self.original_cost,
            "special_adjustment": self.special_adjustment,
            "manual_total": self.manual_total,
            "final_cost": self.final_cost,
            "is_flat_rate": self.is_flat_rate,
            "rate_kind": self.rate_kind.value,
            "rate_label": self.rate_label,
            "category_known": self.category_known,
            "owner_ref": self.owner_ref,
            "size": self.size,
        }

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> 'Receipt':
        return cls(
            session_id=data["session_id"],
            plate=data["plate"],
            category=data["category"],
            entry_timestamp=int(data["entry_timestamp"]),
            exit_timestamp=int(data["exit_timestamp"]),
            stay_duration_text=data["stay_duration_text"],
            duration_minutes=int(data.get("duration_minutes", 0)),
            original_cost=int(data["original_cost"]),
            special_adjustment=int(data.get("special_adjustment", 0)),
            manual_total=data.get("manual_total"),
            final_cost=int(data["final_cost"]),
            is_flat_rate=bool(data["is_flat_rate"]),
            rate_kind=RateKind(data.get("rate_kind", RateKind.UNKNOWN.value)),
            rate_label=data.get("rate_label", ""),
            category_known=bool(data.get("category_known", True)),
            owner_ref=data.get("owner_ref", ""),
            size=data.get("size"),
            receipt_id=str(data.get("_id") or uuid4()),
        )
