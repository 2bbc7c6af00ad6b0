# File: parkdesk/application/tariff_service.py
"""
Tariff Table Application Service

Holds the current tariff snapshot and is its only writer. Readers always
get a whole snapshot; a change builds a new TariffTable, persists it as one
document and then swaps the reference (last writer wins).

Changes made by other desks reach this process through the store's change
notifications, which trigger a reload.
"""

from typing import Any, Callable, Dict, Mapping, Optional, Union
from uuid import uuid4
import logging
import threading

from ..domain.models import (
    TariffRule, TariffTable, FlatRate, ValidationError,
    default_tariffs, band_category
)
from ..infrastructure.repositories import TariffRepository, DocumentStoreError, StoreChange
from ..infrastructure.messaging import MessageBus, EventType
from .dtos import TariffRuleDTO, TariffTableDTO
from .errors import TariffNotFound, PersistenceFailure

TariffCallback = Callable[[TariffTable], None]
TariffInput = Union[TariffTable, TariffTableDTO, Mapping[str, Any]]


class TariffService:
    """Application service for the tariff table"""

    def __init__(self, repository: TariffRepository, message_bus: Optional[MessageBus] = None):
        self.repository = repository
        self.message_bus = message_bus
        self.logger = logging.getLogger(self.__class__.__name__)

        self._table = TariffTable()
        self._lock = threading.Lock()
        self._subscribers: Dict[str, TariffCallback] = {}
        self._store_subscription: Optional[str] = None

    # ========================================================================
    # QUERIES
    # ========================================================================

    def snapshot(self) -> TariffTable:
        """Current immutable snapshot"""
        return self._table

    def get(self, category: str) -> TariffRule:
        rule = self._table.lookup(category)
        if rule is None:
            raise TariffNotFound(category)
        return rule

    def negotiated_band(self, category: str, size: str) -> Optional[FlatRate]:
        """Size-tier band bounding the agreed price of a negotiated category"""
        key = band_category(category, size)
        if key is None:
            return None
        rule = self._table.lookup(key)
        return rule if isinstance(rule, FlatRate) else None

    # ========================================================================
    # LOADING
    # ========================================================================

    def load(self) -> TariffTable:
        """Read the persisted snapshot; an empty store yields an empty table"""
        try:
            table = self.repository.load()
        except DocumentStoreError as e:
            self.logger.error(f"Failed to load tariffs: {e}")
            raise PersistenceFailure(f"Could not load tariffs: {e}") from e
        except ValidationError as e:
            self.logger.error(f"Persisted tariff table is invalid: {e}")
            raise

        self._swap(table or TariffTable())
        return self._table

    def refresh(self) -> TariffTable:
        return self.load()

    def seed_defaults(self) -> bool:
        """Populate the default tariffs when nothing is stored yet"""
        current = self.load()
        if len(current) > 0:
            self.logger.debug("Tariffs already present, skipping seed")
            return False

        self.replace_all(default_tariffs())
        self.logger.info("Seeded default tariffs")
        if self.message_bus:
            self.message_bus.emit(EventType.TARIFFS_SEEDED, {"categories": sorted(self._table)})
        return True

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def replace_all(self, new_table: TariffInput) -> TariffTable:
        """
        Validate, persist and publish a whole new table

        Accepts a TariffTable, a TariffTableDTO, or a mapping of category to
        either TariffRule or raw rule dict. Nothing is stored unless every
        rule is valid.
        """
        table = self._coerce(new_table)

        try:
            self.repository.save(table)
        except DocumentStoreError as e:
            self.logger.error(f"Failed to save tariffs: {e}")
            raise PersistenceFailure(f"Could not save tariffs: {e}") from e

        self._swap(table)
        self.logger.info(f"Tariff table replaced ({len(table)} categories)")

        if self.message_bus:
            self.message_bus.emit(EventType.TARIFFS_UPDATED, {"categories": sorted(table)})
        return table

    def update_rule(self, category: str, rule: Union[TariffRule, Mapping[str, Any]]) -> TariffTable:
        """Edit one existing category"""
        current = self._table
        if current.lookup(category) is None:
            raise TariffNotFound(category)
        if not isinstance(rule, TariffRule):
            rule = self._parse_rule(category, rule)
        return self.replace_all(current.with_rule(category, rule))

    @classmethod
    def _coerce(cls, new_table: TariffInput) -> TariffTable:
        if isinstance(new_table, TariffTable):
            return new_table
        if isinstance(new_table, TariffTableDTO):
            return new_table.to_table()
        if not isinstance(new_table, Mapping):
            raise ValidationError(f"Cannot build a tariff table from {type(new_table).__name__}")

        rules: Dict[str, TariffRule] = {}
        for category, rule in new_table.items():
            if isinstance(rule, TariffRule):
                rules[category] = rule
            elif isinstance(rule, Mapping):
                rules[category] = cls._parse_rule(category, rule)
            else:
                raise ValidationError(f"Category '{category}' does not map to a tariff rule")
        return TariffTable(rules)

    @staticmethod
    def _parse_rule(category: str, raw: Mapping[str, Any]) -> TariffRule:
        try:
            return TariffRuleDTO.parse_rule(dict(raw))
        except ValidationError as e:
            raise ValidationError(f"Invalid rule for '{category}': {e}") from e

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def subscribe(self, callback: TariffCallback) -> str:
        """Call back with the new snapshot on every change"""
        subscription_id = str(uuid4())
        with self._lock:
            self._subscribers[subscription_id] = callback
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscribers.pop(subscription_id, None) is not None

    def watch_store(self) -> None:
        """Reload whenever another process changes the stored table"""
        if self._store_subscription is None:
            self._store_subscription = self.repository.subscribe(self._on_store_change)

    def stop_watching(self) -> None:
        if self._store_subscription is not None:
            self.repository.store.unsubscribe(self._store_subscription)
            self._store_subscription = None

    def _on_store_change(self, change: StoreChange) -> None:
        try:
            self.refresh()
        except (PersistenceFailure, ValidationError) as e:
            self.logger.warning(f"Ignoring tariff change notification: {e}")

    def _swap(self, table: TariffTable) -> None:
        with self._lock:
            if table == self._table:
                return
            self._table = table
            callbacks = list(self._subscribers.values())

        for callback in callbacks:
            try:
                callback(table)
            except Exception as e:
                self.logger.error(f"Error in tariff subscriber: {e}", exc_info=True)
