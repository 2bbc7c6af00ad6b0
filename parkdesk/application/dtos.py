# File: parkdesk/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Parking Desk

This module defines DTOs for data transfer between layers:
1. Input DTOs - Entry, exit and tariff edits coming from an operator
2. Output DTOs - Active sessions, fee quotes and receipts for display

DTO Principles:
- Validation at creation
- No business logic, only data and conversion to/from domain objects
- Serialization/deserialization support
"""

from typing import Dict, List, Optional, Any
import json

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..domain.models import (
    TariffRule, TariffTable, HalfHourMetered, PerMinuteMetered, FlatRate,
    FeeResult, Receipt, LicensePlate, VehicleSize, ValidationError
)
from ..domain.aggregates import ParkingSession


PRICE_FIELDS = ("half_hour_price", "per_minute_price", "amount")


def describe_validation_error(error: PydanticValidationError) -> str:
    """Flatten pydantic errors into a single operator-readable line"""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        return self.model_dump(exclude_none=exclude_none, **kwargs)

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls(**json.loads(json_str))


# ============================================================================
# INPUT DTOs
# ============================================================================

class EntryRequestDTO(BaseDTO):
    """Vehicle check-in request"""
    plate: str = Field(..., min_length=1, description="License plate")
    category: str = Field(..., min_length=1, description="Vehicle category key")
    owner_ref: Optional[str] = Field(default=None, description="Operator identity")
    size: Optional[str] = Field(default=None, description="small, medium or large")
    agreed_price: Optional[int] = Field(default=None, ge=0, description="Negotiated price")
    entry_timestamp: Optional[int] = Field(default=None, ge=0, description="Epoch milliseconds")

    @field_validator('plate')
    @classmethod
    def normalize_plate(cls, v: str) -> str:
        try:
            return LicensePlate.normalize(v)
        except ValidationError as e:
            raise ValueError(str(e))

    @field_validator('category')
    @classmethod
    def strip_category(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Category is required")
        return v

    @field_validator('size')
    @classmethod
    def validate_size(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        try:
            return VehicleSize.parse(v).value
        except ValidationError as e:
            raise ValueError(str(e))


class ExitRequestDTO(BaseDTO):
    """
    Vehicle check-out request
    adjustment is a signed delta; manual_total replaces the computed amount
    """
    plate: str = Field(..., min_length=1)
    exit_timestamp: Optional[int] = Field(default=None, ge=0)
    adjustment: int = Field(default=0)
    manual_total: Optional[int] = Field(default=None)

    @field_validator('plate')
    @classmethod
    def normalize_plate(cls, v: str) -> str:
        try:
            return LicensePlate.normalize(v)
        except ValidationError as e:
            raise ValueError(str(e))


class TariffRuleDTO(BaseDTO):
    """Raw tariff rule; exactly one price field must be set"""
    half_hour_price: Optional[int] = Field(default=None, ge=0)
    per_minute_price: Optional[int] = Field(default=None, ge=0)
    amount: Optional[int] = Field(default=None, ge=0)
    label: str = ""
    min_amount: Optional[int] = Field(default=None, ge=0)
    max_amount: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode='after')
    def validate_single_variant(self) -> 'TariffRuleDTO':
        populated = [name for name in PRICE_FIELDS if getattr(self, name) is not None]
        if not populated:
            raise ValueError("Rule has no price field")
        if len(populated) > 1:
            raise ValueError(f"Rule is ambiguous: {', '.join(populated)} are all set")
        if self.amount is None and (self.min_amount is not None or self.max_amount is not None):
            raise ValueError("Bounds only apply to flat-rate rules")
        return self

    def to_rule(self) -> TariffRule:
        if self.half_hour_price is not None:
            return HalfHourMetered(self.half_hour_price, self.label)
        if self.per_minute_price is not None:
            return PerMinuteMetered(self.per_minute_price, self.label)
        return FlatRate(self.amount, self.label, self.min_amount, self.max_amount)

    @classmethod
    def from_rule(cls, rule: TariffRule) -> 'TariffRuleDTO':
        data = rule.to_document()
        data.pop("kind", None)
        return cls(**data)

    @classmethod
    def parse_rule(cls, raw: Dict[str, Any]) -> TariffRule:
        """Validate a raw dict into a rule, raising the domain ValidationError"""
        try:
            return cls.model_validate(raw).to_rule()
        except PydanticValidationError as e:
            raise ValidationError(describe_validation_error(e)) from e


class TariffTableDTO(BaseDTO):
    """Whole tariff table as edited in the admin panel"""
    rules: Dict[str, TariffRuleDTO]

    @field_validator('rules')
    @classmethod
    def validate_categories(cls, v: Dict[str, TariffRuleDTO]) -> Dict[str, TariffRuleDTO]:
        for category in v:
            if not category.strip():
                raise ValueError("Category keys cannot be empty")
        return v

    def to_table(self) -> TariffTable:
        return TariffTable({category: dto.to_rule() for category, dto in self.rules.items()})

    @classmethod
    def from_table(cls, table: TariffTable) -> 'TariffTableDTO':
        return cls(rules={category: TariffRuleDTO.from_rule(rule) for category, rule in table.items()})


# ============================================================================
# OUTPUT DTOs
# ============================================================================

class ActiveSessionDTO(BaseDTO):
    """Row of the active vehicles list"""
    session_id: str
    plate: str
    category: str
    entry_timestamp: int
    owner_ref: str
    size: Optional[str] = None
    agreed_price: Optional[int] = None

    @classmethod
    def from_session(cls, session: ParkingSession) -> 'ActiveSessionDTO':
        return cls(
            session_id=session.id,
            plate=session.plate,
            category=session.category,
            entry_timestamp=session.entry_timestamp,
            owner_ref=session.owner_ref,
            size=session.size,
            agreed_price=session.agreed_price,
        )


class FeeQuoteDTO(BaseDTO):
    """Current charge for a vehicle that has not left yet"""
    plate: str
    original_cost: int
    stay_duration_text: str
    duration_minutes: int
    is_flat_rate: bool
    rate_kind: str
    rate_label: str = ""
    category_known: bool = True

    @classmethod
    def from_fee(cls, plate: str, fee: FeeResult) -> 'FeeQuoteDTO':
        return cls(plate=plate, **fee.to_dict())


class ReceiptDTO(BaseDTO):
    """Settled receipt with display strings"""
    session_id: str
    plate: str
    category: str
    entry_timestamp: int
    exit_timestamp: int
    stay_duration_text: str
    duration_minutes: int
    original_cost: int
    special_adjustment: int = 0
    manual_total: Optional[int] = None
    final_cost: int
    is_flat_rate: bool
    rate_kind: str
    rate_label: str = ""
    category_known: bool = True
    owner_ref: str = ""
    size: Optional[str] = None
    receipt_id: Optional[str] = None
    final_cost_text: Optional[str] = None

    @classmethod
    def from_receipt(cls, receipt: Receipt, final_cost_text: Optional[str] = None) -> 'ReceiptDTO':
        return cls(
            receipt_id=receipt.receipt_id, final_cost_text=final_cost_text, **receipt.to_document()
        )


class SessionListDTO(BaseDTO):
    """Active session list with per-category counts"""
    items: List[ActiveSessionDTO]
    total: int
    by_category: Dict[str, int]

    @classmethod
    def from_sessions(cls, sessions: List[ParkingSession]) -> 'SessionListDTO':
        counts: Dict[str, int] = {}
        for session in sessions:
            counts[session.category] = counts.get(session.category, 0) + 1
        return cls(
            items=[ActiveSessionDTO.from_session(s) for s in sessions],
            total=len(sessions),
            by_category=counts,
        )
