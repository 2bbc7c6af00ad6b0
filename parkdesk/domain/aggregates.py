# File: parkdesk/domain/aggregates.py
"""
Aggregate Roots for the Parking Desk
Following Domain-Driven Design (DDD) Aggregate Pattern

Aggregates:
1. ParkingSession - one vehicle on the lot, from entry to settle or cancel

Key Concepts:
- Aggregate Roots enforce business invariants
- Domain events are raised for important state changes
- All modifications go through aggregate root methods
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any, Mapping
from datetime import datetime
import uuid
import logging

from .models import (
    LicensePlate, SessionStatus, VehicleSize, ValidationError,
    is_negotiated
)


# ============================================================================
# BASE ENTITY AND AGGREGATE ROOT
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides common functionality for entities with identity
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        return self._id

    def __eq__(self, other: object) -> bool:
        """Entities are equal if they have the same ID and type"""
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """

    event_type: str = "domain.event"

    def __init__(self):
        self.event_id = str(uuid.uuid4())
        self.timestamp = datetime.now()

    @abstractmethod
    def data(self) -> Dict[str, Any]:
        """Event payload"""
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data(),
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None):
        super().__init__(id)
        self._version: int = 1
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        return self._version

    def _increment_version(self) -> None:
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    @property
    def has_changes(self) -> bool:
        return len(self._changes) > 0

    def _validate_invariants(self) -> None:
        """Validate aggregate invariants - to be overridden by subclasses"""
        pass


# ============================================================================
# SESSION EVENTS
# ============================================================================

class SessionRegisteredEvent(DomainEvent):
    """Raised when a vehicle enters the lot"""

    event_type = "session.registered"

    def __init__(self, session: 'ParkingSession'):
        super().__init__()
        self.session_id = session.id
        self.plate = session.plate
        self.category = session.category
        self.entry_timestamp = session.entry_timestamp
        self.owner_ref = session.owner_ref

    def data(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plate": self.plate,
            "category": self.category,
            "entry_timestamp": self.entry_timestamp,
            "owner_ref": self.owner_ref,
        }


class SessionSettledEvent(DomainEvent):
    """Raised when a session is billed and closed"""

    event_type = "session.settled"

    def __init__(self, session: 'ParkingSession', exit_timestamp: int, final_cost: int):
        super().__init__()
        self.session_id = session.id
        self.plate = session.plate
        self.category = session.category
        self.exit_timestamp = exit_timestamp
        self.final_cost = final_cost

    def data(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plate": self.plate,
            "category": self.category,
            "exit_timestamp": self.exit_timestamp,
            "final_cost": self.final_cost,
        }


class SessionCancelledEvent(DomainEvent):
    """Raised when a session is removed without billing"""

    event_type = "session.cancelled"

    def __init__(self, session: 'ParkingSession'):
        super().__init__()
        self.session_id = session.id
        self.plate = session.plate
        self.category = session.category

    def data(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plate": self.plate,
            "category": self.category,
        }


# ============================================================================
# PARKING SESSION AGGREGATE
# ============================================================================

class ParkingSession(AggregateRoot):
    """
    Aggregate Root: Parking Session
    One vehicle currently on the lot. State machine:
    ACTIVE -> SETTLED | CANCELLED; terminal states never go back to ACTIVE
    """

    def __init__(
        self,
        plate: str,
        category: str,
        entry_timestamp: int,
        owner_ref: str,
        size: Optional[str] = None,
        agreed_price: Optional[int] = None,
        status: SessionStatus = SessionStatus.ACTIVE,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.plate = LicensePlate.normalize(plate)
        self.category = (category or "").strip()
        self.entry_timestamp = int(entry_timestamp)
        self.owner_ref = owner_ref
        self.size = VehicleSize.parse(size).value if size else None
        self.agreed_price = agreed_price
        self.status = status

        self._validate_invariants()

    def _validate_invariants(self) -> None:
        if not self.category:
            raise ValidationError("Vehicle category is required")

        if self.agreed_price is not None:
            if isinstance(self.agreed_price, bool) or not isinstance(self.agreed_price, int):
                raise ValidationError(f"Agreed price must be an integer amount: {self.agreed_price!r}")
            if self.agreed_price < 0:
                raise ValidationError(f"Agreed price cannot be negative: {self.agreed_price}")

    # ========================================================================
    # SESSION OPERATIONS
    # ========================================================================

    @classmethod
    def register(
        cls,
        plate: str,
        category: str,
        entry_timestamp: int,
        owner_ref: str,
        size: Optional[str] = None,
        agreed_price: Optional[int] = None
    ) -> 'ParkingSession':
        """Create a fresh ACTIVE session and raise its registration event"""
        session = cls(
            plate=plate,
            category=category,
            entry_timestamp=entry_timestamp,
            owner_ref=owner_ref,
            size=size,
            agreed_price=agreed_price,
        )
        session._add_domain_event(SessionRegisteredEvent(session))
        session._logger.info(f"Registered session for {session.plate} ({session.category})")
        return session

    def settle(self, exit_timestamp: int, final_cost: int) -> None:
        """Close the session after billing"""
        self._require_active("settle")
        self.status = SessionStatus.SETTLED
        self._increment_version()
        self._add_domain_event(SessionSettledEvent(self, exit_timestamp, final_cost))

    def cancel(self) -> None:
        """Close the session without billing"""
        self._require_active("cancel")
        self.status = SessionStatus.CANCELLED
        self._increment_version()
        self._add_domain_event(SessionCancelledEvent(self))

    def _require_active(self, action: str) -> None:
        if self.status != SessionStatus.ACTIVE:
            raise ValueError(f"Cannot {action} session with status {self.status.value}")

    # ========================================================================
    # QUERY METHODS
    # ========================================================================

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_negotiated(self) -> bool:
        return is_negotiated(self.category)

    def matches(self, term: str) -> bool:
        """Case-insensitive substring match on plate or category"""
        needle = (term or "").strip().lower()
        return needle in self.plate.lower() or needle in self.category.lower()

    def to_document(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "_id": self.id,
            "plate": self.plate,
            "category": self.category,
            "entry_timestamp": self.entry_timestamp,
            "owner_ref": self.owner_ref,
        }
        if self.size is not None:
            data["size"] = self.size
        if self.agreed_price is not None:
            data["agreed_price"] = self.agreed_price
        return data

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> 'ParkingSession':
        return cls(
            id=str(data["_id"]),
            plate=data["plate"],
            category=data["category"],
            entry_timestamp=data["entry_timestamp"],
            owner_ref=data.get("owner_ref", ""),
            size=data.get("size"),
            agreed_price=data.get("agreed_price"),
        )

    def __str__(self) -> str:
        return f"ParkingSession: {self.plate} ({self.category}) - {self.status.value}"
