"""
Event Bus Module

Ordered, partitioned, at-least-once publish/subscribe transport.

Messages with the same key land on the same partition and are delivered to a
consumer group in publish order. A partition never advances past a message
until the handler calls ``commit()``; a handler that raises or returns without
committing leaves the message to be delivered again after a restart or
rebalance.

Two implementations:
- InMemoryEventBus: partitioned in-process log for tests and single-process runs
- KafkaEventBus: confluent-kafka with manual offset commits
"""

import json
import logging
import threading
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Callable, Tuple

from confluent_kafka import Producer, Consumer, KafkaError, KafkaException, TopicPartition

from .exceptions import PublishFailure


logger = logging.getLogger("account_chain.bus")


@dataclass
class Message:
    """A message delivered to a handler"""
    topic: str
    key: Optional[str]
    payload: Dict[str, Any]
    partition: int = 0
    offset: int = 0


Commit = Callable[[], None]
Handler = Callable[[Message, Commit], None]


def partition_for(key: Optional[str], partitions: int) -> int:
    """Stable key -> partition mapping (same across processes)"""
    if key is None:
        return 0
    return zlib.crc32(key.encode("utf-8")) % partitions


class EventBus(ABC):
    """Abstract event bus interface"""

    @abstractmethod
    def publish(self, topic: str, key: Optional[str], payload: Dict[str, Any]) -> None:
        """Publish a payload; raises PublishFailure if the bus cannot accept it"""
        pass

    @abstractmethod
    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        """Register ``handler`` as the consumer of ``topic`` for ``group``"""
        pass

    @abstractmethod
    def start(self) -> None:
        """Start delivering messages"""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering messages"""
        pass

    @abstractmethod
    def is_running(self) -> bool:
        """Check if bus is running"""
        pass


class InMemoryEventBus(EventBus):
    """
    In-memory partitioned log.

    Delivery is driven explicitly with ``poll()`` / ``run_until_idle()``. Each
    (topic, group, partition) keeps a committed offset; a message delivered but
    not committed blocks its partition until ``restart()`` rewinds every
    partition to its committed offset.
    """

    def __init__(self, partitions: int = 3):
        self.partitions = partitions
        self.running = False
        self._log: Dict[str, List[List[Message]]] = {}
        self._history: List[Message] = []
        self._subscriptions: Dict[Tuple[str, str], Handler] = {}
        self._committed: Dict[Tuple[str, str, int], int] = {}
        self._stalled: Dict[Tuple[str, str, int], bool] = {}
        self._lock = threading.RLock()

    def _partitions_of(self, topic: str) -> List[List[Message]]:
        if topic not in self._log:
            self._log[topic] = [[] for _ in range(self.partitions)]
        return self._log[topic]

    def publish(self, topic: str, key: Optional[str], payload: Dict[str, Any]) -> None:
        """Append to the topic's partition for ``key``"""
        with self._lock:
            partition = partition_for(key, self.partitions)
            log = self._partitions_of(topic)[partition]
            # Round-trip through JSON so consumers never share objects with producers
            message = Message(
                topic=topic,
                key=key,
                payload=json.loads(json.dumps(payload, default=str)),
                partition=partition,
                offset=len(log),
            )
            log.append(message)
            self._history.append(message)
            logger.debug(f"Published to {topic}:{partition}:{message.offset} key={key}")

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        """One handler per (topic, group); it receives every partition"""
        with self._lock:
            self._subscriptions[(topic, group)] = handler
            self._partitions_of(topic)

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False

    def is_running(self) -> bool:
        return self.running

    def restart(self) -> None:
        """Simulate a consumer restart: uncommitted messages become deliverable again"""
        with self._lock:
            self._stalled.clear()

    def committed_offset(self, topic: str, group: str, partition: int) -> int:
        return self._committed.get((topic, group, partition), 0)

    def _deliver(self, topic: str, group: str, partition: int, handler: Handler) -> bool:
        state_key = (topic, group, partition)
        if self._stalled.get(state_key):
            return False
        log = self._log[topic][partition]
        offset = self._committed.get(state_key, 0)
        if offset >= len(log):
            return False

        message = log[offset]

        def commit() -> None:
            self._committed[state_key] = max(self._committed.get(state_key, 0), offset + 1)

        try:
            handler(Message(topic, message.key, json.loads(json.dumps(message.payload)),
                            message.partition, message.offset), commit)
        except Exception as e:
            logger.error(f"Handler for {topic} in group {group} failed at "
                         f"{partition}:{offset}: {e}")

        if self._committed.get(state_key, 0) <= offset:
            self._stalled[state_key] = True
        return True

    def poll(self) -> int:
        """Offer at most one message per (subscription, partition); returns deliveries made"""
        delivered = 0
        with self._lock:
            for (topic, group), handler in list(self._subscriptions.items()):
                for partition in range(self.partitions):
                    if self._deliver(topic, group, partition, handler):
                        delivered += 1
        return delivered

    def run_until_idle(self, max_rounds: int = 10000) -> int:
        """Poll until nothing more can be delivered"""
        total = 0
        for _ in range(max_rounds):
            delivered = self.poll()
            if delivered == 0:
                break
            total += delivered
        return total

    def get_messages(self, topic: Optional[str] = None) -> List[Message]:
        """Published messages in publish order, optionally for one topic"""
        with self._lock:
            if topic is None:
                return list(self._history)
            return [m for m in self._history if m.topic == topic]

    def get_payloads(self, topic: str) -> List[Dict[str, Any]]:
        return [m.payload for m in self.get_messages(topic)]

    def clear(self) -> None:
        """Clear published messages and offsets (for testing)"""
        with self._lock:
            self._log.clear()
            self._history.clear()
            self._committed.clear()
            self._stalled.clear()
            for topic, _ in self._subscriptions:
                self._partitions_of(topic)


class KafkaEventBus(EventBus):
    """Kafka event bus with manual commits"""

    def __init__(self, bootstrap_servers: str, client_id: str = "account-chain",
                 auto_offset_reset: str = "earliest", poll_timeout: float = 1.0,
                 flush_timeout: float = 10.0, **config):
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.auto_offset_reset = auto_offset_reset
        self.poll_timeout = poll_timeout
        self.flush_timeout = flush_timeout
        self.config = config
        self.producer = None
        self.consumers: Dict[Tuple[str, str], Consumer] = {}
        self.subscribers: Dict[Tuple[str, str], Handler] = {}
        self.running = False
        self.consumer_threads: List[threading.Thread] = []
        self._lock = threading.RLock()

    def _create_producer(self) -> Producer:
        """Create Kafka producer"""
        producer_config = {
            'bootstrap.servers': self.bootstrap_servers,
            'client.id': self.client_id,
            'enable.idempotence': True,
            'acks': 'all',
            **self.config
        }
        return Producer(producer_config)

    def _create_consumer(self, group_id: str) -> Consumer:
        """Create Kafka consumer; offsets are committed only by handlers"""
        consumer_config = {
            'bootstrap.servers': self.bootstrap_servers,
            'group.id': group_id,
            'client.id': self.client_id,
            'auto.offset.reset': self.auto_offset_reset,
            'enable.auto.commit': False,
            **self.config
        }
        return Consumer(consumer_config)

    def publish(self, topic: str, key: Optional[str], payload: Dict[str, Any]) -> None:
        """Publish to Kafka and wait for the broker acknowledgement"""
        with self._lock:
            if not self.producer:
                self.producer = self._create_producer()
            errors = []

            def delivery_callback(err, msg):
                if err:
                    errors.append(err)
                else:
                    logger.debug(f"Event published to {topic}:{msg.partition()}:{msg.offset()}")

            try:
                self.producer.produce(
                    topic,
                    json.dumps(payload, default=str).encode("utf-8"),
                    key=key.encode("utf-8") if key is not None else None,
                    on_delivery=delivery_callback,
                )
                remaining = self.producer.flush(self.flush_timeout)
            except (KafkaException, BufferError) as e:
                raise PublishFailure(f"Failed to publish to {topic}: {e}") from e

            if errors:
                raise PublishFailure(f"Failed to publish to {topic}: {errors[0]}")
            if remaining:
                raise PublishFailure(f"Timed out publishing to {topic}")

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        """Subscribe ``handler`` to ``topic`` under consumer group ``group``"""
        with self._lock:
            self.subscribers[(topic, group)] = handler
            if (topic, group) not in self.consumers:
                consumer = self._create_consumer(group)
                consumer.subscribe([topic])
                self.consumers[(topic, group)] = consumer
                if self.running:
                    self._start_consumer_thread(topic, group)

    def _handle(self, consumer: Consumer, msg, handler: Handler) -> None:
        committed = []

        def commit() -> None:
            consumer.commit(message=msg, asynchronous=False)
            committed.append(True)

        key = msg.key().decode("utf-8") if msg.key() is not None else None
        try:
            payload = json.loads(msg.value().decode("utf-8"))
            handler(Message(msg.topic(), key, payload, msg.partition(), msg.offset()), commit)
        except Exception as e:
            logger.error(f"Error in event handler for {msg.topic()}: {e}")

        if not committed:
            # Rewind so the same message is fetched again on the next poll
            consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))

    def _start_consumer_thread(self, topic: str, group: str) -> None:
        """Start consumer thread for a subscription"""
        def consume_messages():
            consumer = self.consumers[(topic, group)]
            handler = self.subscribers[(topic, group)]
            while self.running:
                try:
                    msg = consumer.poll(self.poll_timeout)
                    if msg is None:
                        continue

                    if msg.error():
                        if msg.error().code() != KafkaError._PARTITION_EOF:
                            logger.error(f"Consumer error: {msg.error()}")
                        continue

                    self._handle(consumer, msg, handler)

                except KafkaException as e:
                    logger.error(f"Consumer thread error for {topic}/{group}: {e}")

            consumer.close()

        thread = threading.Thread(target=consume_messages, name=f"kafka-consumer-{group}-{topic}")
        thread.daemon = True
        thread.start()
        self.consumer_threads.append(thread)

    def start(self) -> None:
        """Start consumer threads for existing subscriptions"""
        self.running = True
        for topic, group in self.consumers:
            self._start_consumer_thread(topic, group)
        logger.info("KafkaEventBus started")

    def stop(self) -> None:
        """Stop the event bus"""
        self.running = False

        for thread in self.consumer_threads:
            thread.join(timeout=5.0)
        self.consumer_threads = []

        if self.producer:
            self.producer.flush(self.flush_timeout)

        logger.info("KafkaEventBus stopped")

    def is_running(self) -> bool:
        return self.running
