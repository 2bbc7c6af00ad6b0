# File: parkdesk/application/parking_service.py
"""
Parking Desk Application Service

This module implements the application service layer for the parking desk.
It orchestrates the domain logic and handles the use cases of the system:
vehicle check-in, check-out with billing, cancellation and the active
vehicles views.

Responsibilities:
1. Coordinate the session aggregate, the fee calculator and the stores
2. Execute business transactions (use cases)
3. Handle cross-cutting concerns (logging, validation, error handling)
4. Provide a clean API for the command layer and the CLI

Key Principles:
- Dependency Injection for testability (stores, clock, identity)
- Uniqueness and single termination are enforced by the store, not by
  checks in this process
- Exit is safe to retry: the receipt is keyed by session id
"""

from typing import Dict, List, Optional
import logging

from ..domain.models import LicensePlate, FeeResult, Receipt, is_negotiated
from ..domain.aggregates import ParkingSession
from ..domain.strategies import FeeCalculator
from ..infrastructure.repositories import (
    SessionRepository, ReceiptRepository,
    DocumentStoreError, DuplicateDocumentError, StoreChange
)
from ..infrastructure.messaging import MessageBus, EventType
from ..infrastructure.providers import Clock, SystemClock, IdentityProvider, StaticIdentityProvider
from .tariff_service import TariffService
from .receipts import ReceiptBuilder
from .errors import (
    DuplicateActive, MissingNegotiatedPrice, SessionNotFound, PersistenceFailure
)


# ============================================================================
# SESSION REGISTRY
# ============================================================================

class SessionRegistry:
    """
    Read model of the vehicles currently on the lot
    The whole view is swapped on reload, so readers never see a partial list
    """

    def __init__(self):
        self._sessions: Dict[str, ParkingSession] = {}

    def replace(self, sessions: List[ParkingSession]) -> None:
        self._sessions = {session.plate: session for session in sessions}

    def add(self, session: ParkingSession) -> None:
        sessions = dict(self._sessions)
        sessions[session.plate] = session
        self._sessions = sessions

    def remove(self, plate: str) -> None:
        sessions = dict(self._sessions)
        sessions.pop(plate, None)
        self._sessions = sessions

    def get(self, plate: str) -> Optional[ParkingSession]:
        return self._sessions.get(plate)

    def all(self) -> List[ParkingSession]:
        return sorted(self._sessions.values(), key=lambda s: s.entry_timestamp)

    def filter_by_category(self, category: str) -> List[ParkingSession]:
        return [s for s in self.all() if s.category == category]

    def search(self, term: str) -> List[ParkingSession]:
        return [s for s in self.all() if s.matches(term)]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, plate: str) -> bool:
        return plate in self._sessions


# ============================================================================
# PARKING SERVICE (Main Application Service)
# ============================================================================

class ParkingService:
    """
    Main application service for the parking desk

    State machine per plate: absent -> active -> settled | cancelled.
    """

    def __init__(
        self,
        session_repository: SessionRepository,
        receipt_repository: ReceiptRepository,
        tariff_service: TariffService,
        fee_calculator: Optional[FeeCalculator] = None,
        receipt_builder: Optional[ReceiptBuilder] = None,
        clock: Optional[Clock] = None,
        identity: Optional[IdentityProvider] = None,
        message_bus: Optional[MessageBus] = None,
        registry: Optional[SessionRegistry] = None
    ):
        self.sessions = session_repository
        self.receipts = receipt_repository
        self.tariff_service = tariff_service
        self.fee_calculator = fee_calculator or FeeCalculator()
        self.receipt_builder = receipt_builder or ReceiptBuilder()
        self.clock = clock or SystemClock()
        self.identity = identity or StaticIdentityProvider()
        self.message_bus = message_bus
        self.registry = registry or SessionRegistry()
        self.logger = logging.getLogger(self.__class__.__name__)
        self._store_subscription: Optional[str] = None

    # ========================================================================
    # USE CASE: Vehicle Entry
    # ========================================================================

    def register_entry(
        self,
        plate: str,
        category: str,
        owner_ref: Optional[str] = None,
        size: Optional[str] = None,
        agreed_price: Optional[int] = None,
        entry_timestamp: Optional[int] = None
    ) -> str:
        """
        Check a vehicle in and return the new session id

        Raises DuplicateActive when the plate is already on the lot and
        MissingNegotiatedPrice when a negotiated category lacks its agreed
        price or size. Two desks racing on the same plate are settled by the
        store's unique constraint.
        """
        plate = LicensePlate.normalize(plate)
        category = (category or "").strip()

        if is_negotiated(category):
            if agreed_price is None:
                raise MissingNegotiatedPrice(category, "an agreed price")
            if not size:
                raise MissingNegotiatedPrice(category, "a vehicle size")

        if self._find_session(plate) is not None:
            raise DuplicateActive(plate)

        session = ParkingSession.register(
            plate=plate,
            category=category,
            entry_timestamp=self.clock.now() if entry_timestamp is None else entry_timestamp,
            owner_ref=owner_ref or self.identity.current_owner(),
            size=size,
            agreed_price=agreed_price,
        )
        self._check_tariff(session)

        try:
            self.sessions.add(session)
        except DuplicateDocumentError:
            raise DuplicateActive(plate)
        except DocumentStoreError as e:
            self.logger.error(f"Failed to register entry for {plate}: {e}")
            raise PersistenceFailure(f"Could not register entry for {plate}: {e}") from e

        self.registry.add(session)
        self._publish(session)
        self.logger.info(f"Vehicle {plate} entered as {category} (session {session.id})")
        return session.id

    def _check_tariff(self, session: ParkingSession) -> None:
        """Warn about entries that will bill oddly; never blocks the entry"""
        if session.is_negotiated:
            band = self.tariff_service.negotiated_band(session.category, session.size)
            if band is not None and not band.accepts(session.agreed_price):
                self.logger.warning(
                    f"Agreed price {session.agreed_price} for {session.plate} is outside "
                    f"the {session.size} band {band.min_amount}-{band.max_amount}"
                )
        elif self.tariff_service.snapshot().lookup(session.category) is None:
            self.logger.warning(f"Category '{session.category}' has no tariff; {session.plate} will bill 0")

    # ========================================================================
    # USE CASE: Vehicle Exit
    # ========================================================================

    def register_exit(
        self,
        plate: str,
        exit_timestamp: Optional[int] = None,
        adjustment: int = 0,
        manual_total: Optional[int] = None
    ) -> Receipt:
        """
        Bill and close the active session for a plate

        The receipt is stored before the session is removed. If the removal
        finds the session already gone, another desk finished it first: the
        receipt is withdrawn and SessionNotFound is raised. A store failure
        raises PersistenceFailure carrying the receipt; the session stays
        active and the call can be repeated.
        """
        plate = LicensePlate.normalize(plate)
        session = self._require_session(plate)
        exit_timestamp = self.clock.now() if exit_timestamp is None else exit_timestamp

        fee = self.fee_calculator.compute_fee(session, self.tariff_service.snapshot(), exit_timestamp)
        if not fee.category_known:
            self._report_unknown_category(session)

        receipt = self.receipt_builder.build(
            session, fee, exit_timestamp, adjustment=adjustment, manual_total=manual_total
        )

        try:
            self.receipts.add(receipt)
        except DocumentStoreError as e:
            self.logger.error(f"Failed to store receipt for {plate}: {e}")
            raise PersistenceFailure(f"Could not store receipt for {plate}: {e}", receipt) from e

        try:
            removed = self.sessions.delete(session.id)
        except DocumentStoreError as e:
            self.logger.error(f"Failed to close session for {plate}: {e}")
            raise PersistenceFailure(f"Could not close session for {plate}: {e}", receipt) from e

        if not removed:
            self._withdraw_receipt(receipt)
            self.registry.remove(plate)
            raise SessionNotFound(plate)

        self._discard_other_attempts(receipt)
        session.settle(exit_timestamp, receipt.final_cost)
        self.registry.remove(plate)
        self._publish(session)
        self.logger.info(
            f"Vehicle {plate} exited after {receipt.stay_duration_text}, "
            f"charged {receipt.final_cost}"
        )
        return receipt

    def _withdraw_receipt(self, receipt: Receipt) -> None:
        try:
            self.receipts.withdraw(receipt)
        except DocumentStoreError as e:
            self.logger.error(f"Could not withdraw receipt {receipt.receipt_id}: {e}")
        self.logger.warning(f"Session for {receipt.plate} was closed concurrently; receipt withdrawn")

    def _discard_other_attempts(self, receipt: Receipt) -> None:
        # The session is already closed here, so a failure only leaves a stale receipt behind
        try:
            discarded = self.receipts.discard_other_attempts(receipt)
        except DocumentStoreError as e:
            self.logger.error(f"Could not discard stale receipts for {receipt.session_id}: {e}")
            return
        if discarded:
            self.logger.info(f"Discarded {discarded} stale receipt(s) for {receipt.plate}")

    def _report_unknown_category(self, session: ParkingSession) -> None:
        self.logger.warning(f"No tariff for category '{session.category}' ({session.plate}); billing 0")
        if self.message_bus:
            self.message_bus.emit(
                EventType.FEE_INCONSISTENCY,
                {"plate": session.plate, "category": session.category},
                aggregate_id=session.id,
            )

    # ========================================================================
    # USE CASE: Cancel Entry
    # ========================================================================

    def cancel_session(self, plate: str, session_id: Optional[str] = None) -> None:
        """
        Remove an active session without billing it

        With session_id, only that session is cancelled: a later session for
        the same plate raises SessionNotFound and is left alone.
        """
        plate = LicensePlate.normalize(plate)
        session = self._require_session(plate)
        if session_id is not None and session.id != session_id:
            raise SessionNotFound(plate, session_id)

        try:
            removed = self.sessions.delete(session.id)
        except DocumentStoreError as e:
            self.logger.error(f"Failed to cancel session for {plate}: {e}")
            raise PersistenceFailure(f"Could not cancel session for {plate}: {e}") from e

        self.registry.remove(plate)
        if not removed:
            raise SessionNotFound(plate)

        session.cancel()
        self._publish(session)
        self.logger.info(f"Session for {plate} cancelled")

    # ========================================================================
    # QUERIES
    # ========================================================================

    def preview_fee(self, plate: str, at: Optional[int] = None) -> FeeResult:
        """Current charge for a vehicle still on the lot"""
        plate = LicensePlate.normalize(plate)
        session = self._require_session(plate)
        moment = self.clock.now() if at is None else at
        return self.fee_calculator.compute_fee(session, self.tariff_service.snapshot(), moment)

    def get_session(self, plate: str) -> ParkingSession:
        return self._require_session(LicensePlate.normalize(plate))

    def list_active(self) -> List[ParkingSession]:
        return self.registry.all()

    def filter_by_category(self, category: str) -> List[ParkingSession]:
        return self.registry.filter_by_category(category)

    def search(self, term: str) -> List[ParkingSession]:
        return self.registry.search(term)

    def list_receipts(self, plate: Optional[str] = None) -> List[Receipt]:
        try:
            if plate:
                return self.receipts.find_by_plate(LicensePlate.normalize(plate))
            return self.receipts.get_all()
        except DocumentStoreError as e:
            raise PersistenceFailure(f"Could not read receipts: {e}") from e

    # ========================================================================
    # REGISTRY SYNC
    # ========================================================================

    def refresh(self) -> List[ParkingSession]:
        """Reload the active vehicles view from the store"""
        try:
            sessions = self.sessions.get_all()
        except DocumentStoreError as e:
            self.logger.error(f"Failed to load active sessions: {e}")
            raise PersistenceFailure(f"Could not load active sessions: {e}") from e
        self.registry.replace(sessions)
        self.logger.debug(f"Loaded {len(sessions)} active sessions")
        return self.registry.all()

    def watch_store(self) -> None:
        """Keep the registry current with changes from any desk"""
        if self._store_subscription is None:
            self._store_subscription = self.sessions.subscribe(self._on_store_change)

    def stop_watching(self) -> None:
        if self._store_subscription is not None:
            self.sessions.store.unsubscribe(self._store_subscription)
            self._store_subscription = None

    def _on_store_change(self, change: StoreChange) -> None:
        try:
            self.refresh()
        except PersistenceFailure as e:
            self.logger.warning(f"Ignoring session change notification: {e}")

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _find_session(self, plate: str) -> Optional[ParkingSession]:
        try:
            return self.sessions.find_by_plate(plate)
        except DocumentStoreError as e:
            self.logger.error(f"Failed to look up {plate}: {e}")
            raise PersistenceFailure(f"Could not look up {plate}: {e}") from e

    def _require_session(self, plate: str) -> ParkingSession:
        session = self._find_session(plate)
        if session is None:
            raise SessionNotFound(plate)
        return session

    def _publish(self, session: ParkingSession) -> None:
        events = session.clear_events()
        if self.message_bus and events:
            self.message_bus.publish_aggregate_events(events)
