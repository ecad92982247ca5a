"""
Notification Dispatcher Module

Consumes ``BankAccountCreated`` and welcomes the customer by email and SMS.
Each channel is attempted independently; whatever the outcome, one audit row
per event records what was sent. The message is committed only after that
row is stored.
"""

import logging
import requests
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, List, Optional, Tuple

from .bus import Message, Commit
from .consumer import IdempotencyGuard, parse_payload
from .events import BankAccountCreated
from .exceptions import NotifierError
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("account_chain.notifications")


AUDIT_TABLE = "notification_audits"
NOTIFICATION_TYPE = "ACCOUNT_CREATED"
WELCOME_SUBJECT = "Welcome! Your Bank Account is Ready"


class Notifier(ABC):
    """Transport for customer notifications"""

    @abstractmethod
    def send_email(self, to: str, subject: str, body: str) -> None:
        """Send an email; raises NotifierError on failure"""
        pass

    @abstractmethod
    def send_sms(self, to: str, message: str) -> None:
        """Send an SMS; raises NotifierError on failure"""
        pass


class LogNotifier(Notifier):
    """Development notifier - writes notifications to the log, keeping the last ``max_sent``"""

    def __init__(self, logger=None, max_sent: int = 1000):
        self.logger = logger or logging.getLogger("account_chain.notifications.log")
        self.sent: Deque[Tuple[str, str, str]] = deque(maxlen=max_sent)  # (channel, to, text)

    def send_email(self, to: str, subject: str, body: str) -> None:
        self.logger.info(f"EMAIL to {to}: {subject}")
        self.sent.append(("email", to, body))

    def send_sms(self, to: str, message: str) -> None:
        self.logger.info(f"SMS to {to}: {message}")
        self.sent.append(("sms", to, message))


class WebhookNotifier(Notifier):
    """Posts notifications to email / SMS gateway webhooks"""

    def __init__(self, email_url: str = "", sms_url: str = "", timeout: int = 10):
        self.email_url = email_url
        self.sms_url = sms_url
        self.timeout = timeout

    def send_email(self, to: str, subject: str, body: str) -> None:
        self._post(self.email_url, "email", {"to": to, "subject": subject, "body": body})

    def send_sms(self, to: str, message: str) -> None:
        self._post(self.sms_url, "sms", {"to": to, "message": message})

    def _post(self, url: str, channel: str, payload: dict) -> None:
        if not url:
            raise NotifierError(f"No {channel} gateway configured")
        try:
            response = requests.post(
                url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            raise NotifierError(f"{channel} gateway unreachable: {e}") from e

        if not 200 <= response.status_code < 300:
            raise NotifierError(f"{channel} gateway returned {response.status_code}: {response.text}")


@dataclass
class NotificationAudit(StorageRecord):
    """One row per processed BankAccountCreated event"""
    event_id: str
    customer_id: int
    account_number: int
    email_sent: bool
    sms_sent: bool
    sent_at: datetime
    notification_type: str = NOTIFICATION_TYPE
    email_address: Optional[str] = None
    mobile_number: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0


def build_email_body(event: BankAccountCreated, full_name: str) -> str:
    return (
        f"Dear {full_name},\n\n"
        f"Congratulations! Your bank account has been successfully created.\n\n"
        f"Account Details:\n"
        f"Account Number:  {event.account_number}\n"
        f"Account Type:    {event.account_type}\n"
        f"Branch Code:     {event.branch_code or 'To be assigned'}\n"
        f"Initial Balance: {event.initial_balance:.2f}\n"
        f"Interest Rate:   {event.interest_rate:.2f}%\n"
        f"Status:          {event.account_status}\n\n"
        f"You can now start using your account for deposits, withdrawals, and transfers.\n\n"
        f"Thank you for choosing our bank!\n"
    )


def build_sms_message(event: BankAccountCreated) -> str:
    return (
        f"Welcome {event.first_name}! Your {event.account_type} account #{event.account_number} "
        f"is now active with balance: {event.initial_balance:.2f}. Thank you for banking with us!"
    )


class NotificationDispatcher:
    """
    Sends the account-opening welcome (idempotent on eventId).

    A channel failure is recorded in the audit row, not raised. Anything
    else that goes wrong propagates, leaving the message uncommitted; the
    redelivery then starts from scratch and may resend a channel that had
    already succeeded.
    """

    consumer_group = "notification-service"

    def __init__(self, storage: StorageInterface, notifier: Notifier, contacts):
        """
        Args:
            storage: Storage backend for audit rows
            notifier: Email / SMS transport
            contacts: Customer registry providing ``get_contact(customer_id)``
        """
        self.storage = storage
        self.notifier = notifier
        self.contacts = contacts
        self.table_name = AUDIT_TABLE
        self.guard = IdempotencyGuard(storage, self.table_name, "event_id", self.consumer_group)

    def handle_bank_account_created(self, message: Message, commit: Commit) -> None:
        """Event handler for the bank-account-created topic"""
        event = parse_payload(BankAccountCreated, message.payload)
        self.guard.process(event.event_id, lambda: self._notify(event), commit,
                           event_id=event.event_id)

    def _notify(self, event: BankAccountCreated) -> NotificationAudit:
        contact = self.contacts.get_contact(event.customer_id)
        errors = []

        email = contact.email if contact else None
        phone = contact.phone_number if contact else None
        full_name = contact.full_name if contact else f"{event.first_name} {event.last_name}"

        email_sent = False
        if email:
            try:
                self.notifier.send_email(email, WELCOME_SUBJECT, build_email_body(event, full_name))
                email_sent = True
            except NotifierError as e:
                errors.append(f"email: {e}")
        else:
            errors.append(f"email: no address for customer {event.customer_id}")

        sms_sent = False
        if phone:
            try:
                self.notifier.send_sms(phone, build_sms_message(event))
                sms_sent = True
            except NotifierError as e:
                errors.append(f"sms: {e}")
        else:
            errors.append(f"sms: no mobile number for customer {event.customer_id}")

        now = datetime.now(timezone.utc)
        audit = NotificationAudit(
            created_at=now,
            updated_at=now,
            event_id=event.event_id,
            customer_id=event.customer_id,
            account_number=event.account_number,
            email_sent=email_sent,
            email_address=email,
            sms_sent=sms_sent,
            mobile_number=phone,
            error_message="; ".join(errors) or None,
            sent_at=now,
        )
        self.storage.insert(self.table_name, event.event_id, audit.to_dict(), unique_fields=["event_id"])

        log_action(
            logger, "info" if not errors else "warning",
            f"Account {event.account_number} notifications: email={email_sent} sms={sms_sent}",
            action="notify_account_created", resource=f"account:{event.account_number}",
            event_id=event.event_id, extra={"errors": errors} if errors else None
        )
        return audit

    def get_audit(self, event_id: str) -> Optional[NotificationAudit]:
        data = self.storage.load(self.table_name, event_id)
        return NotificationAudit.from_dict(data) if data else None

    def list_audits(self, customer_id: Optional[int] = None) -> List[NotificationAudit]:
        """Audit rows, optionally for one customer, oldest first"""
        filters = {"customer_id": customer_id} if customer_id is not None else {}
        records = self.storage.find(self.table_name, filters)
        return sorted((NotificationAudit.from_dict(r) for r in records), key=lambda a: a.sent_at)
