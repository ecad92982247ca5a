"""
Consumer Support Module

Building blocks shared by every event consumer in the chain:

- parse_payload: wire dict -> payload dataclass, malformed input -> ValidationError
- IdempotencyGuard: check-then-act on a natural key, skip + commit duplicates
- DeadLetterRouter: bounded retries, then park the message on ``<topic>.DLT``
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Type

from .bus import EventBus, Handler, Message, Commit
from .events import dead_letter_topic
from .exceptions import DuplicateEvent, ValidationError
from .logging_config import log_action
from .storage import StorageInterface


logger = logging.getLogger("account_chain.consumer")


def parse_payload(payload_class: Type, payload: Dict[str, Any]):
    """Decode a wire payload, turning malformed input into a ValidationError"""
    try:
        return payload_class.from_dict(payload)
    except (TypeError, ValueError, ArithmeticError) as e:
        raise ValidationError(f"Malformed {payload_class.__name__} payload: {e}") from e


class IdempotencyGuard:
    """
    Per-consumer duplicate detection on a natural key.

    The natural key is looked up in the consumer's own table. A hit means the
    side effect already happened: the message is committed and skipped. A miss
    runs the action, which must persist its record before returning; only then
    is the message committed. A racing duplicate surfaces as DuplicateEvent from
    the storage uniqueness constraint and is treated the same as a hit.
    """

    def __init__(self, storage: StorageInterface, table: str, key_field: str, consumer: str):
        self.storage = storage
        self.table = table
        self.key_field = key_field
        self.consumer = consumer

    def is_processed(self, natural_key: Any) -> bool:
        return self.storage.count(self.table, {self.key_field: natural_key}) > 0

    def process(self, natural_key: Any, action: Callable[[], Any], commit: Commit,
                event_id: Optional[str] = None) -> Optional[Any]:
        """
        Run ``action`` once per natural key.

        Returns:
            The action's result, or None if the key was already processed
        """
        if self.is_processed(natural_key):
            self._log_duplicate(natural_key, event_id)
            commit()
            return None

        try:
            result = action()
        except DuplicateEvent:
            self._log_duplicate(natural_key, event_id)
            commit()
            return None

        commit()
        return result

    def _log_duplicate(self, natural_key: Any, event_id: Optional[str]) -> None:
        log_action(
            logger, "info",
            f"{self.consumer}: {self.key_field}={natural_key} already processed, skipping",
            action="skip_duplicate", resource=f"{self.table}:{natural_key}", event_id=event_id
        )


class DeadLetterRouter:
    """
    Wraps handlers with a bounded delivery policy.

    - ValidationError: never succeeds on retry, dead-lettered on first failure
    - any other exception: re-raised (no commit, redelivered) until the message
      has failed ``max_attempts`` times, then dead-lettered

    Attempt counts are kept in storage so they survive a consumer restart. After
    a successful dead-letter publish the original message is committed. If the
    dead-letter publish itself fails the message stays uncommitted.
    """

    ATTEMPTS_TABLE = "delivery_attempts"

    def __init__(self, bus: EventBus, storage: StorageInterface,
                 max_attempts: int = 3, suffix: str = ".DLT"):
        self.bus = bus
        self.storage = storage
        self.max_attempts = max_attempts
        self.suffix = suffix

    def wrap(self, group: str, handler: Handler) -> Handler:
        """Return a handler applying the dead-letter policy for ``group``"""

        def guarded(message: Message, commit: Commit) -> None:
            attempt_id = f"{group}:{message.topic}:{message.partition}:{message.offset}"
            try:
                handler(message, commit)
            except ValidationError as e:
                attempts = self._record_attempt(attempt_id)
                self._dead_letter(group, message, e, attempts)
                self.storage.delete(self.ATTEMPTS_TABLE, attempt_id)
                commit()
            except Exception as e:
                attempts = self._record_attempt(attempt_id)
                if attempts < self.max_attempts:
                    log_action(
                        logger, "warning",
                        f"{group}: attempt {attempts}/{self.max_attempts} failed for "
                        f"{message.topic}:{message.partition}:{message.offset}: {e}",
                        action="handle_event", resource=f"{message.topic}:{message.key}"
                    )
                    raise
                self._dead_letter(group, message, e, attempts)
                self.storage.delete(self.ATTEMPTS_TABLE, attempt_id)
                commit()
            else:
                self.storage.delete(self.ATTEMPTS_TABLE, attempt_id)

        return guarded

    def _record_attempt(self, attempt_id: str) -> int:
        record = self.storage.load(self.ATTEMPTS_TABLE, attempt_id) or {"attempts": 0}
        record["attempts"] += 1
        self.storage.save(self.ATTEMPTS_TABLE, attempt_id, record)
        return record["attempts"]

    def _dead_letter(self, group: str, message: Message, error: Exception, attempts: int) -> None:
        target = dead_letter_topic(message.topic, self.suffix)
        self.bus.publish(target, message.key, {
            "sourceTopic": message.topic,
            "sourcePartition": message.partition,
            "sourceOffset": message.offset,
            "consumerGroup": group,
            "payload": message.payload,
            "error": str(error),
            "errorType": type(error).__name__,
            "attempts": attempts,
            "failedAt": datetime.now(timezone.utc).isoformat(),
        })
        log_action(
            logger, "error",
            f"{group}: moved {message.topic}:{message.partition}:{message.offset} to {target} "
            f"after {attempts} attempt(s): {error}",
            action="dead_letter", resource=f"{message.topic}:{message.key}",
            event_id=message.payload.get("eventId") if isinstance(message.payload, dict) else None
        )
