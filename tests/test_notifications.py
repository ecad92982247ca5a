"""
Tests for the Notification Dispatcher

Tests welcome email/SMS delivery, audit rows, idempotency on eventId,
soft channel failures and the webhook notifier.
"""

import pytest
import requests
from decimal import Decimal
from unittest.mock import Mock, patch

from account_chain.bus import Message
from account_chain.customers import ContactInfo
from account_chain.events import BankAccountCreated, Topics
from account_chain.exceptions import NotifierError
from account_chain.notifications import (
    AUDIT_TABLE, WELCOME_SUBJECT, LogNotifier, NotificationDispatcher, WebhookNotifier,
    build_email_body, build_sms_message
)
from account_chain.storage import InMemoryStorage


def account_event(**overrides):
    fields = dict(
        account_number=100001,
        customer_id=5001,
        first_name="Juan",
        last_name="Dela Cruz",
        account_type="SAVINGS",
        initial_balance=Decimal("1000.00"),
        interest_rate=Decimal("3.50"),
        account_status="ACTIVE",
        branch_code="BR001",
    )
    fields.update(overrides)
    return BankAccountCreated(**fields)


def account_message(event=None):
    event = event or account_event()
    return Message(Topics.BANK_ACCOUNT_CREATED.value, str(event.account_number), event.to_dict())


class StubContacts:
    """Customer registry returning a fixed contact"""

    def __init__(self, contact=None):
        self.contact = contact

    def get_contact(self, customer_id):
        return self.contact


CONTACT = ContactInfo(customer_id=5001, full_name="Juan Santos Dela Cruz",
                      email="juan@example.com", phone_number="+639171234567")


class TestMessageBuilders:

    def test_email_body(self):
        body = build_email_body(account_event(), "Juan Santos Dela Cruz")
        assert "Dear Juan Santos Dela Cruz" in body
        assert "100001" in body
        assert "1000.00" in body
        assert "3.50%" in body
        assert "BR001" in body

    def test_email_body_without_branch(self):
        assert "To be assigned" in build_email_body(account_event(branch_code=None), "Juan")

    def test_sms(self):
        sms = build_sms_message(account_event())
        assert sms.startswith("Welcome Juan!")
        assert "#100001" in sms


class TestNotificationDispatcher:
    """BankAccountCreated -> welcome notifications"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.notifier = LogNotifier()
        self.dispatcher = NotificationDispatcher(self.storage, self.notifier, StubContacts(CONTACT))

    def test_sends_both_channels_and_audits(self):
        """Test email and SMS go out and one audit row is stored"""
        event = account_event()
        commit = Mock()

        self.dispatcher.handle_bank_account_created(account_message(event), commit)

        commit.assert_called_once()
        channels = [(channel, to) for channel, to, _ in self.notifier.sent]
        assert channels == [("email", "juan@example.com"), ("sms", "+639171234567")]

        audit = self.dispatcher.get_audit(event.event_id)
        assert audit.email_sent
        assert audit.sms_sent
        assert audit.error_message is None
        assert audit.account_number == 100001
        assert audit.notification_type == "ACCOUNT_CREATED"
        assert self.storage.count(AUDIT_TABLE) == 1

    def test_duplicate_event_skipped(self):
        """Test redelivery of the same event sends nothing new"""
        message = account_message()
        self.dispatcher.handle_bank_account_created(message, Mock())
        commit = Mock()

        self.dispatcher.handle_bank_account_created(message, commit)

        commit.assert_called_once()
        assert len(self.notifier.sent) == 2
        assert self.storage.count(AUDIT_TABLE) == 1

    def test_distinct_events_each_notify(self):
        """Test idempotency is per eventId"""
        self.dispatcher.handle_bank_account_created(account_message(), Mock())
        self.dispatcher.handle_bank_account_created(account_message(), Mock())

        assert len(self.dispatcher.list_audits(customer_id=5001)) == 2
        assert self.dispatcher.list_audits(customer_id=9999) == []

    def test_missing_contact_is_soft_failure(self):
        """Test an unknown customer still produces an audit row and a commit"""
        dispatcher = NotificationDispatcher(self.storage, self.notifier, StubContacts(None))
        event = account_event()
        commit = Mock()

        dispatcher.handle_bank_account_created(account_message(event), commit)

        commit.assert_called_once()
        assert len(self.notifier.sent) == 0
        audit = dispatcher.get_audit(event.event_id)
        assert not audit.email_sent
        assert not audit.sms_sent
        assert "no address" in audit.error_message
        assert "no mobile number" in audit.error_message

    def test_channel_failure_recorded(self):
        """Test one failing channel does not stop the other"""
        notifier = Mock()
        notifier.send_email.side_effect = NotifierError("smtp down")
        dispatcher = NotificationDispatcher(self.storage, notifier, StubContacts(CONTACT))
        event = account_event()

        dispatcher.handle_bank_account_created(account_message(event), Mock())

        notifier.send_email.assert_called_once()
        assert notifier.send_email.call_args[0][1] == WELCOME_SUBJECT
        notifier.send_sms.assert_called_once()
        audit = dispatcher.get_audit(event.event_id)
        assert not audit.email_sent
        assert audit.sms_sent
        assert audit.error_message == "email: smtp down"

    def test_unexpected_error_not_committed(self):
        """Test a non-notifier failure propagates and leaves the message uncommitted"""
        notifier = Mock()
        notifier.send_sms.side_effect = RuntimeError("bug")
        dispatcher = NotificationDispatcher(self.storage, notifier, StubContacts(CONTACT))
        commit = Mock()

        with pytest.raises(RuntimeError):
            dispatcher.handle_bank_account_created(account_message(), commit)

        commit.assert_not_called()
        assert self.storage.count(AUDIT_TABLE) == 0

    def test_unknown_audit(self):
        assert self.dispatcher.get_audit("missing") is None


class TestLogNotifier:

    def test_sent_history_is_bounded(self):
        """Test only the most recent notifications are kept"""
        notifier = LogNotifier(max_sent=3)
        for i in range(5):
            notifier.send_sms(f"+6391700000{i}", "hello")

        assert len(notifier.sent) == 3
        assert [to for _, to, _ in notifier.sent] == ["+63917000002", "+63917000003", "+63917000004"]


class TestWebhookNotifier:
    """Gateway webhooks against mocked requests"""

    @patch('requests.post')
    def test_email_posted(self, mock_post):
        mock_post.return_value = Mock(status_code=202)
        notifier = WebhookNotifier(email_url="https://mail.example.com/send", timeout=5)

        notifier.send_email("juan@example.com", "Hi", "Body")

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == "https://mail.example.com/send"
        assert kwargs["json"] == {"to": "juan@example.com", "subject": "Hi", "body": "Body"}
        assert kwargs["timeout"] == 5

    @patch('requests.post')
    def test_sms_posted(self, mock_post):
        mock_post.return_value = Mock(status_code=200)
        WebhookNotifier(sms_url="https://sms.example.com").send_sms("+639171234567", "Hello")
        assert mock_post.call_args[1]["json"] == {"to": "+639171234567", "message": "Hello"}

    @patch('requests.post')
    def test_error_status(self, mock_post):
        mock_post.return_value = Mock(status_code=500, text="boom")
        with pytest.raises(NotifierError):
            WebhookNotifier(email_url="https://mail.example.com").send_email("a@b.co", "s", "b")

    @patch('requests.post')
    def test_network_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(NotifierError):
            WebhookNotifier(sms_url="https://sms.example.com").send_sms("+1", "m")

    @patch('requests.post')
    def test_missing_gateway(self, mock_post):
        with pytest.raises(NotifierError):
            WebhookNotifier().send_email("a@b.co", "s", "b")
        mock_post.assert_not_called()
