# File: parkdesk/infrastructure/factories.py
"""
Factory Pattern Implementation for the Parking Desk

ServiceFactory wires stores, messaging and services from AppConfig into a
ParkDeskApp, the object the command line drives.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from ..domain.strategies import FeeCalculator
from ..application.tariff_service import TariffService
from ..application.parking_service import ParkingService
from ..application.receipts import ReceiptBuilder
from ..application.commands import CommandContext, CommandProcessor
from .config import AppConfig
from .messaging import MessageBrokerFactory, MessageBus, LoggingEventHandler
from .providers import Clock, SystemClock, IdentityProvider, StaticIdentityProvider
from .repositories import (
    DocumentStore, RepositoryFactory,
    TariffRepository, SessionRepository, ReceiptRepository
)


# ============================================================================
# APPLICATION WIRING
# ============================================================================

@dataclass
class ParkDeskApp:
    """Wired application: services plus the resources they hold"""
    config: AppConfig
    store: DocumentStore
    message_bus: MessageBus
    tariff_service: TariffService
    parking_service: ParkingService
    receipt_builder: ReceiptBuilder
    processor: CommandProcessor

    def start(self, watch: bool = True) -> None:
        """Load state from the store and follow later changes"""
        self.tariff_service.load()
        self.parking_service.refresh()
        if watch:
            self.tariff_service.watch_store()
            self.parking_service.watch_store()

    def close(self) -> None:
        self.tariff_service.stop_watching()
        self.parking_service.stop_watching()
        self.message_bus.close()
        self.store.close()


class ServiceFactory:
    """Builds a ParkDeskApp from configuration"""

    def __init__(self, config: AppConfig):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)

    def create_store(self) -> DocumentStore:
        if self.config.store == "mongo":
            self.logger.info(f"Using MongoDB store at {self.config.mongo_url}/{self.config.mongo_db}")
            return RepositoryFactory.create_mongo_store(
                self.config.mongo_url,
                database=self.config.mongo_db,
                timeout_ms=self.config.store_timeout_ms,
            )
        self.logger.info("Using in-memory store")
        return RepositoryFactory.create_in_memory_store()

    def create_message_bus(self) -> MessageBus:
        kwargs = {}
        if self.config.broker == "redis":
            kwargs["redis_url"] = self.config.redis_url
        bus = MessageBrokerFactory.create_message_bus(
            self.config.broker, topic=self.config.events_topic, **kwargs
        )
        bus.event_bus.subscribe_all(LoggingEventHandler())
        return bus

    def create_app(
        self,
        store: Optional[DocumentStore] = None,
        message_bus: Optional[MessageBus] = None,
        clock: Optional[Clock] = None,
        identity: Optional[IdentityProvider] = None
    ) -> ParkDeskApp:
        store = store or self.create_store()
        message_bus = message_bus or self.create_message_bus()
        receipt_builder = ReceiptBuilder(currency=self.config.currency, tz=self.config.timezone)

        tariff_service = TariffService(TariffRepository(store), message_bus=message_bus)
        parking_service = ParkingService(
            SessionRepository(store),
            ReceiptRepository(store),
            tariff_service,
            fee_calculator=FeeCalculator(),
            receipt_builder=receipt_builder,
            clock=clock or SystemClock(),
            identity=identity or StaticIdentityProvider(self.config.default_owner),
            message_bus=message_bus,
        )
        processor = CommandProcessor(CommandContext(parking_service, tariff_service, receipt_builder))

        return ParkDeskApp(
            config=self.config,
            store=store,
            message_bus=message_bus,
            tariff_service=tariff_service,
            parking_service=parking_service,
            receipt_builder=receipt_builder,
            processor=processor,
        )
