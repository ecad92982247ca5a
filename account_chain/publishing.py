"""
Event Publishing Module

Services hand events to an EventPublisher rather than to the bus directly.

- DirectPublisher: publish once the caller's atomic block commits; a
  PublishFailure is logged and the caller's state change stands.
- OutboxPublisher: write the event to the ``outbox`` table. Called inside the
  caller's ``storage.atomic()`` block, the state change and the event row commit
  or roll back together.
- OutboxRelay: publish pending outbox rows in order, retrying failures and
  parking a row as DEAD_LETTER once it runs out of attempts.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any

from .bus import EventBus
from .events import EventPayload
from .exceptions import PublishFailure, ResourceNotFound
from .logging_config import log_action
from .storage import StorageInterface


logger = logging.getLogger("account_chain.publishing")


OUTBOX_TABLE = "outbox"


class OutboxStatus(Enum):
    """Outbox row status"""
    PENDING = "pending"
    PUBLISHED = "published"
    DEAD_LETTER = "dead_letter"


class EventPublisher(ABC):
    """Where services send the events they emit"""

    @abstractmethod
    def publish(self, event: EventPayload) -> bool:
        """
        Hand an event off for delivery.

        Returns:
            True if the event was accepted, False if delivery failed and was logged
        """
        pass


class DirectPublisher(EventPublisher):
    """
    Publish straight to the bus, logging failures.

    Given the storage the caller writes through, an event published inside
    an ``atomic()`` block is held until that block commits and is dropped if
    it rolls back. ``publish`` then returns True once the event is queued;
    a later send failure is only logged.
    """

    def __init__(self, bus: EventBus, storage: Optional[StorageInterface] = None):
        self.bus = bus
        self.storage = storage

    def publish(self, event: EventPayload) -> bool:
        if self.storage is None:
            return self._send(event)
        self.storage.on_commit(lambda: self._send(event))
        return True

    def _send(self, event: EventPayload) -> bool:
        try:
            self.bus.publish(event.topic.value, event.key, event.to_dict())
        except PublishFailure as e:
            log_action(
                logger, "error", f"Failed to publish {event.topic.value}: {e}",
                action="publish_event", resource=f"{event.topic.value}:{event.key}",
                event_id=event.event_id
            )
            return False
        log_action(
            logger, "debug", f"Published {event.topic.value}",
            action="publish_event", resource=f"{event.topic.value}:{event.key}",
            event_id=event.event_id
        )
        return True


class OutboxPublisher(EventPublisher):
    """Record events in the outbox table for the relay to publish"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def publish(self, event: EventPayload) -> bool:
        sequence = self.storage.next_sequence("outbox", 1)
        self.storage.insert(OUTBOX_TABLE, event.event_id, {
            "event_id": event.event_id,
            "sequence": sequence,
            "topic": event.topic.value,
            "key": event.key,
            "payload": event.to_dict(),
            "status": OutboxStatus.PENDING.value,
            "attempt_count": 0,
            "last_error": None,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "published_at": None,
        })
        log_action(
            logger, "debug", f"Queued {event.topic.value} in outbox",
            action="enqueue_event", resource=f"{event.topic.value}:{event.key}",
            event_id=event.event_id
        )
        return True


class OutboxRelay:
    """Publishes outbox rows to the bus"""

    def __init__(self, storage: StorageInterface, bus: EventBus,
                 max_attempts: int = 5, batch_size: int = 100):
        self.storage = storage
        self.bus = bus
        self.max_attempts = max_attempts
        self.batch_size = batch_size

    def pending(self) -> List[Dict[str, Any]]:
        """Pending rows in the order they were written"""
        rows = self.storage.find(OUTBOX_TABLE, {"status": OutboxStatus.PENDING.value})
        return sorted(rows, key=lambda row: row["sequence"])

    def dead_letters(self) -> List[Dict[str, Any]]:
        rows = self.storage.find(OUTBOX_TABLE, {"status": OutboxStatus.DEAD_LETTER.value})
        return sorted(rows, key=lambda row: row["sequence"])

    def relay_pending(self) -> int:
        """
        Publish up to ``batch_size`` pending rows.

        A failed row blocks later rows with the same topic and key for this
        pass so per-key order is kept.

        Returns:
            Number of rows published
        """
        published = 0
        blocked = set()
        for row in self.pending()[:self.batch_size]:
            ordering_key = (row["topic"], row["key"])
            if ordering_key in blocked:
                continue
            try:
                self.bus.publish(row["topic"], row["key"], row["payload"])
            except PublishFailure as e:
                blocked.add(ordering_key)
                self._mark_failed(row, str(e))
                continue
            row["status"] = OutboxStatus.PUBLISHED.value
            row["attempt_count"] += 1
            row["published_at"] = datetime.now(timezone.utc).isoformat()
            self.storage.save(OUTBOX_TABLE, row["event_id"], row)
            published += 1

        if published:
            logger.info(f"Relayed {published} outbox events")
        return published

    def _mark_failed(self, row: Dict[str, Any], error: str) -> None:
        row["attempt_count"] += 1
        row["last_error"] = error
        if row["attempt_count"] >= self.max_attempts:
            row["status"] = OutboxStatus.DEAD_LETTER.value
            log_action(
                logger, "error",
                f"Outbox event moved to dead letter after {row['attempt_count']} attempts: {error}",
                action="relay_event", resource=f"{row['topic']}:{row['key']}",
                event_id=row["event_id"]
            )
        else:
            log_action(
                logger, "warning", f"Outbox publish failed, will retry: {error}",
                action="relay_event", resource=f"{row['topic']}:{row['key']}",
                event_id=row["event_id"], extra={"attempt_count": row["attempt_count"]}
            )
        self.storage.save(OUTBOX_TABLE, row["event_id"], row)

    def requeue(self, event_id: str) -> None:
        """Return a dead-lettered row to PENDING with a fresh attempt budget"""
        row = self.storage.load(OUTBOX_TABLE, event_id)
        if not row:
            raise ResourceNotFound(f"Outbox event {event_id} not found")
        row["status"] = OutboxStatus.PENDING.value
        row["attempt_count"] = 0
        self.storage.save(OUTBOX_TABLE, event_id, row)

    def get_statistics(self) -> Dict[str, int]:
        """Row counts per status"""
        return {
            status.value: self.storage.count(OUTBOX_TABLE, {"status": status.value})
            for status in OutboxStatus
        }
