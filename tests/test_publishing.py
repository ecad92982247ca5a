"""
Tests for event publishers and the transactional outbox
"""

import pytest
from unittest.mock import Mock, patch

from account_chain.bus import InMemoryEventBus
from account_chain.events import BranchAssignmentEvent, Topics
from account_chain.exceptions import PublishFailure, ResourceNotFound
from account_chain.publishing import (
    DirectPublisher, OutboxPublisher, OutboxRelay, OutboxStatus, OUTBOX_TABLE
)
from account_chain.storage import InMemoryStorage


def make_event(customer_id=5001, branch="BR001"):
    return BranchAssignmentEvent(customer_id=customer_id, branch_code=branch,
                                 assignment_reason="AUTO_ASSIGNMENT", application_id=1001)


class TestDirectPublisher:
    """Immediate, best-effort publishing"""

    def test_publishes_wire_payload(self):
        """Test topic, key and camelCase payload reach the bus"""
        bus = InMemoryEventBus()
        event = make_event()

        assert DirectPublisher(bus).publish(event) is True

        messages = bus.get_messages(Topics.BRANCH_ASSIGNMENT.value)
        assert len(messages) == 1
        assert messages[0].key == "5001"
        assert messages[0].payload["branchCode"] == "BR001"
        assert messages[0].payload["eventId"] == event.event_id

    def test_publish_failure_logged_not_raised(self):
        """Test a failing bus returns False instead of raising"""
        bus = Mock()
        bus.publish.side_effect = PublishFailure("broker down")

        with patch('account_chain.publishing.log_action') as mock_log:
            assert DirectPublisher(bus).publish(make_event()) is False
        assert mock_log.call_args[0][1] == "error"

    def test_publish_inside_atomic_waits_for_commit(self):
        """Test an event published in an atomic block is sent after it commits"""
        storage = InMemoryStorage()
        bus = InMemoryEventBus()
        publisher = DirectPublisher(bus, storage)

        with storage.atomic():
            assert publisher.publish(make_event()) is True
            assert bus.get_messages(Topics.BRANCH_ASSIGNMENT.value) == []

        assert len(bus.get_messages(Topics.BRANCH_ASSIGNMENT.value)) == 1

    def test_rolled_back_block_publishes_nothing(self):
        """Test an event published before the block raises never reaches the bus"""
        storage = InMemoryStorage()
        bus = InMemoryEventBus()
        publisher = DirectPublisher(bus, storage)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("customers", "5001", {"customer_id": 5001})
                publisher.publish(make_event())
                raise RuntimeError("write failed after emit")

        assert bus.get_messages(Topics.BRANCH_ASSIGNMENT.value) == []
        assert storage.load("customers", "5001") is None

    def test_bus_not_called_inside_transaction(self):
        """Test the send happens once the outer block has released storage"""
        storage = InMemoryStorage()
        bus = Mock()
        lock_free = []
        bus.publish.side_effect = lambda *args: lock_free.append(storage._depth == 0)

        with storage.atomic():
            DirectPublisher(bus, storage).publish(make_event())

        assert lock_free == [True]


class TestOutbox:
    """Outbox publisher + relay"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.bus = InMemoryEventBus()
        self.publisher = OutboxPublisher(self.storage)
        self.relay = OutboxRelay(self.storage, self.bus, max_attempts=3)

    def test_publish_writes_pending_row_only(self):
        """Test nothing reaches the bus until the relay runs"""
        event = make_event()
        assert self.publisher.publish(event)

        row = self.storage.load(OUTBOX_TABLE, event.event_id)
        assert row["status"] == OutboxStatus.PENDING.value
        assert row["topic"] == Topics.BRANCH_ASSIGNMENT.value
        assert row["key"] == "5001"
        assert self.bus.get_messages() == []

    def test_outbox_row_rolls_back_with_state_change(self):
        """Test the event row is discarded when the caller's block fails"""
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("customers", "5001", {"customer_id": 5001})
                self.publisher.publish(make_event())
                raise RuntimeError("state write failed")

        assert self.storage.count(OUTBOX_TABLE) == 0
        assert not self.storage.exists("customers", "5001")

    def test_relay_publishes_in_order(self):
        """Test rows are published in the order they were written"""
        first = make_event(branch="BR001")
        second = make_event(branch="BR002")
        self.publisher.publish(first)
        self.publisher.publish(second)

        assert self.relay.relay_pending() == 2

        payloads = self.bus.get_payloads(Topics.BRANCH_ASSIGNMENT.value)
        assert [p["branchCode"] for p in payloads] == ["BR001", "BR002"]
        assert self.storage.load(OUTBOX_TABLE, first.event_id)["status"] == OutboxStatus.PUBLISHED.value
        assert self.relay.relay_pending() == 0

    def test_relay_retries_after_publish_failure(self):
        """Test a failed row stays pending and goes out on a later pass"""
        event = make_event()
        self.publisher.publish(event)

        with patch.object(self.bus, 'publish', side_effect=PublishFailure("broker down")):
            assert self.relay.relay_pending() == 0

        row = self.storage.load(OUTBOX_TABLE, event.event_id)
        assert row["status"] == OutboxStatus.PENDING.value
        assert row["attempt_count"] == 1
        assert row["last_error"] == "broker down"

        assert self.relay.relay_pending() == 1
        assert len(self.bus.get_messages()) == 1

    def test_failed_row_blocks_same_key_successors(self):
        """Test per-key order is kept when an earlier row fails"""
        blocked_first = make_event(customer_id=5001, branch="BR001")
        blocked_second = make_event(customer_id=5001, branch="BR002")
        other_key = make_event(customer_id=5002, branch="BR003")
        for event in (blocked_first, blocked_second, other_key):
            self.publisher.publish(event)

        real_publish = self.bus.publish

        def flaky_publish(topic, key, payload):
            if payload["eventId"] == blocked_first.event_id:
                raise PublishFailure("partition leader unavailable")
            real_publish(topic, key, payload)

        with patch.object(self.bus, 'publish', side_effect=flaky_publish):
            assert self.relay.relay_pending() == 1

        assert [m.key for m in self.bus.get_messages()] == ["5002"]
        assert self.storage.load(OUTBOX_TABLE, blocked_second.event_id)["status"] == OutboxStatus.PENDING.value

        self.relay.relay_pending()
        codes = [p["branchCode"] for p in self.bus.get_payloads(Topics.BRANCH_ASSIGNMENT.value)]
        assert codes == ["BR003", "BR001", "BR002"]

    def test_row_dead_lettered_after_max_attempts(self):
        """Test a row that keeps failing is parked as DEAD_LETTER"""
        event = make_event()
        self.publisher.publish(event)

        with patch.object(self.bus, 'publish', side_effect=PublishFailure("broker down")):
            for _ in range(3):
                self.relay.relay_pending()

        row = self.storage.load(OUTBOX_TABLE, event.event_id)
        assert row["status"] == OutboxStatus.DEAD_LETTER.value
        assert row["attempt_count"] == 3
        assert self.relay.pending() == []
        assert len(self.relay.dead_letters()) == 1

        stats = self.relay.get_statistics()
        assert stats[OutboxStatus.DEAD_LETTER.value] == 1

    def test_requeue_dead_letter(self):
        """Test a dead-lettered row can be returned to the queue"""
        event = make_event()
        self.publisher.publish(event)
        with patch.object(self.bus, 'publish', side_effect=PublishFailure("broker down")):
            for _ in range(3):
                self.relay.relay_pending()

        self.relay.requeue(event.event_id)
        assert self.relay.relay_pending() == 1

    def test_requeue_unknown_event(self):
        with pytest.raises(ResourceNotFound):
            self.relay.requeue("missing")

    def test_batch_size_limits_pass(self):
        relay = OutboxRelay(self.storage, self.bus, batch_size=2)
        for n in range(5):
            self.publisher.publish(make_event(customer_id=5000 + n))

        assert relay.relay_pending() == 2
        assert len(relay.pending()) == 3
