"""
Provisioning System Module

Builds every stage of the chain over one storage backend and one event bus and
subscribes each consumer under its own consumer group.
"""

import logging
from typing import Optional

from .accounts import AccountProvisioner
from .applications import ApplicationManager
from .branches import (
    BranchDirectory, BranchResolver, BranchStatus, HttpBranchDirectory, InMemoryBranchDirectory
)
from .bus import EventBus, InMemoryEventBus, KafkaEventBus
from .config import ChainConfig, get_config
from .consumer import DeadLetterRouter
from .customers import CustomerProvisioner
from .events import Topics
from .ledger import TransactionLedger
from .notifications import LogNotifier, NotificationDispatcher, Notifier, WebhookNotifier
from .publishing import DirectPublisher, EventPublisher, OutboxPublisher, OutboxRelay
from .storage import StorageInterface, StorageSequenceSource, create_storage


logger = logging.getLogger("account_chain.system")


def create_event_bus(config: ChainConfig) -> EventBus:
    """Kafka when bootstrap servers are configured, otherwise in-memory"""
    if config.kafka_bootstrap_servers:
        return KafkaEventBus(
            config.kafka_bootstrap_servers,
            client_id=config.kafka_client_id,
            auto_offset_reset=config.kafka_auto_offset_reset,
            poll_timeout=config.kafka_poll_timeout_seconds,
        )
    return InMemoryEventBus(partitions=config.kafka_partitions)


def create_branch_directory(config: ChainConfig) -> BranchDirectory:
    """HTTP directory when a URL is configured, otherwise every candidate ACTIVE"""
    if config.branch_directory_url:
        return HttpBranchDirectory(config.branch_directory_url, timeout=config.branch_directory_timeout)
    return InMemoryBranchDirectory({code: BranchStatus.ACTIVE for code in config.branch_candidates})


def create_notifier(config: ChainConfig) -> Notifier:
    """Webhook notifier when a gateway URL is configured, otherwise log only"""
    if config.email_gateway_url or config.sms_gateway_url:
        return WebhookNotifier(config.email_gateway_url, config.sms_gateway_url,
                               timeout=config.notifier_timeout)
    return LogNotifier()


class ProvisioningSystem:
    """Account chain with all components initialized and subscribed"""

    def __init__(
        self,
        config: Optional[ChainConfig] = None,
        storage: Optional[StorageInterface] = None,
        bus: Optional[EventBus] = None,
        branch_directory: Optional[BranchDirectory] = None,
        notifier: Optional[Notifier] = None,
        publisher: Optional[EventPublisher] = None
    ):
        self.config = config or get_config()

        # Infrastructure
        self.storage = storage or create_storage(self.config.database_url)
        self.bus = bus or create_event_bus(self.config)
        self.sequences = StorageSequenceSource(self.storage, self.config.sequence_starts)

        if publisher is not None:
            self.publisher = publisher
            self.relay = None
        elif self.config.outbox_enabled:
            self.publisher = OutboxPublisher(self.storage)
            self.relay = OutboxRelay(self.storage, self.bus, max_attempts=self.config.outbox_max_attempts,
                                     batch_size=self.config.outbox_batch_size)
        else:
            self.publisher = DirectPublisher(self.bus, self.storage)
            self.relay = None

        self.branch_directory = branch_directory or create_branch_directory(self.config)
        self.notifier = notifier or create_notifier(self.config)

        # Stages of the chain
        self.applications = ApplicationManager(self.storage, self.sequences, self.publisher)
        self.branch_resolver = BranchResolver(self.branch_directory, self.config.branch_candidates,
                                              self.publisher, storage=self.storage)
        self.customers = CustomerProvisioner(self.storage, self.sequences, self.branch_resolver,
                                             self.publisher)
        self.accounts = AccountProvisioner(self.storage, self.sequences, self.publisher)
        self.ledger = TransactionLedger(self.storage, self.sequences, self.publisher,
                                        accounts=self.accounts,
                                        max_append_retries=self.config.ledger_max_append_retries)
        self.notifications = NotificationDispatcher(self.storage, self.notifier, self.customers)

        self.dead_letters = DeadLetterRouter(self.bus, self.storage,
                                             max_attempts=self.config.max_delivery_attempts,
                                             suffix=self.config.dead_letter_suffix)
        self._subscribe()

    def _subscribe(self) -> None:
        subscriptions = [
            (Topics.APPLICATION_APPROVED, self.customers.consumer_group,
             self.customers.handle_application_approved),
            (Topics.CUSTOMER_ACCOUNT_CREATED, self.accounts.consumer_group,
             self.accounts.handle_customer_account_created),
            (Topics.BANK_ACCOUNT_CREATED, self.ledger.consumer_group,
             self.ledger.handle_bank_account_created),
            (Topics.BANK_ACCOUNT_CREATED, self.notifications.consumer_group,
             self.notifications.handle_bank_account_created),
        ]
        for topic, group, handler in subscriptions:
            self.bus.subscribe(topic.value, group, self.dead_letters.wrap(group, handler))
            logger.debug(f"Subscribed {group} to {topic.value}")

    def relay_outbox(self) -> int:
        """Publish pending outbox rows (no-op without an outbox)"""
        if self.relay is None:
            return 0
        return self.relay.relay_pending()

    def run_until_idle(self, max_rounds: int = 1000) -> int:
        """
        Relay the outbox and drain the in-memory bus until neither has work.

        Returns:
            Number of messages delivered
        """
        delivered_total = 0
        for _ in range(max_rounds):
            relayed = self.relay_outbox()
            delivered = self.bus.run_until_idle() if isinstance(self.bus, InMemoryEventBus) else 0
            delivered_total += delivered
            if relayed == 0 and delivered == 0:
                break
        return delivered_total

    def start(self) -> None:
        self.bus.start()
        logger.info("Provisioning system started")

    def stop(self) -> None:
        self.bus.stop()
        self.storage.close()
        logger.info("Provisioning system stopped")
