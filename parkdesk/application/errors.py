# File: parkdesk/application/errors.py
"""
Application service errors

Every error raised by the services derives from ParkDeskError, so callers
can catch the whole family at once. Infrastructure errors never leak past
the services: store failures surface as PersistenceFailure.
"""

from typing import Optional, TYPE_CHECKING

from ..domain.models import ParkDeskError

if TYPE_CHECKING:
    from ..domain.models import Receipt


class DuplicateActive(ParkDeskError):
    """The plate already has an active session"""

    def __init__(self, plate: str):
        self.plate = plate
        super().__init__(f"Vehicle {plate} is already parked")


class MissingNegotiatedPrice(ParkDeskError):
    """A negotiated category was registered without its agreed price or size"""

    def __init__(self, category: str, missing: str):
        self.category = category
        self.missing = missing
        super().__init__(f"Category '{category}' requires {missing}")


class NotFound(ParkDeskError):
    pass


class SessionNotFound(NotFound):

    def __init__(self, plate: str, session_id: Optional[str] = None):
        self.plate = plate
        self.session_id = session_id
        if session_id is None:
            super().__init__(f"No active session for vehicle {plate}")
        else:
            super().__init__(f"Session {session_id} for vehicle {plate} is no longer active")


class TariffNotFound(NotFound):

    def __init__(self, category: str):
        self.category = category
        super().__init__(f"No tariff configured for category '{category}'")


class PersistenceFailure(ParkDeskError):
    """
    The document store is unreachable or rejected a write
    Carries the computed receipt when the failure happened during an exit,
    so the operator can still show the amount and retry.
    """

    def __init__(self, message: str, receipt: Optional['Receipt'] = None):
        self.receipt = receipt
        super().__init__(message)
