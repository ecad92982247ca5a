"""
Account Provisioner Module

Consumes ``CustomerAccountCreated`` and opens one bank account per customer,
pricing it by account type, then emits ``BankAccountCreated``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from .applications import AccountType, CurrencyType
from .bus import Message, Commit
from .consumer import IdempotencyGuard, parse_payload
from .events import BankAccountCreated, CustomerAccountCreated, parse_enum
from .exceptions import InvalidEnumValue, ResourceNotFound
from .logging_config import log_action
from .publishing import EventPublisher
from .storage import StorageInterface, StorageRecord, StorageSequenceSource


logger = logging.getLogger("account_chain.accounts")


ACCOUNTS_TABLE = "bank_accounts"

# Account type used when an event carries a missing or unrecognised value.
# This is business policy: provisioning proceeds with a savings account
# rather than rejecting the customer.
DEFAULT_ACCOUNT_TYPE = AccountType.SAVINGS

INITIAL_BALANCES = {
    AccountType.TIME_DEPOSIT: Decimal("5000.00"),
    AccountType.SAVINGS: Decimal("1000.00"),
}

INTEREST_RATES = {
    AccountType.CURRENT: Decimal("0.00"),
    AccountType.SAVINGS: Decimal("3.50"),
    AccountType.JOIN_ACCOUNT: Decimal("5.00"),
    AccountType.TIME_DEPOSIT: Decimal("7.00"),
}


class AccountStatus(Enum):
    """Account status"""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    CLOSED = "CLOSED"
    FROZEN = "FROZEN"


@dataclass
class BankAccount(StorageRecord):
    """Bank account opened for a customer"""
    account_number: int
    customer_id: int
    first_name: str
    last_name: str
    account_type: AccountType
    initial_balance: Decimal  # Balance at opening; the ledger owns the live balance
    interest_rate: Decimal
    status: AccountStatus = AccountStatus.ACTIVE
    currency_type: Optional[CurrencyType] = None
    middle_name: Optional[str] = None
    branch_code: Optional[str] = None
    opened_at: Optional[datetime] = None


def parse_account_type(value) -> AccountType:
    """Account type from an event value, DEFAULT_ACCOUNT_TYPE if unparsable"""
    try:
        return parse_enum(AccountType, value, "accountType")
    except InvalidEnumValue:
        logger.warning(f"Unknown account type {value!r}, defaulting to {DEFAULT_ACCOUNT_TYPE.value}")
        return DEFAULT_ACCOUNT_TYPE


def initial_balance_for(account_type: AccountType) -> Decimal:
    return INITIAL_BALANCES.get(account_type, Decimal("0.00"))


def interest_rate_for(account_type: AccountType) -> Decimal:
    return INTEREST_RATES[account_type]


class AccountProvisioner:
    """
    Opens bank accounts for new customers (idempotent on customerId)
    """

    consumer_group = "bank-account-service"

    def __init__(self, storage: StorageInterface, sequences: StorageSequenceSource,
                 publisher: EventPublisher):
        self.storage = storage
        self.sequences = sequences
        self.publisher = publisher
        self.table_name = ACCOUNTS_TABLE
        self.guard = IdempotencyGuard(storage, self.table_name, "customer_id", self.consumer_group)

    def handle_customer_account_created(self, message: Message, commit: Commit) -> None:
        """Event handler for the customer-account-created topic"""
        event = parse_payload(CustomerAccountCreated, message.payload)
        self.guard.process(event.customer_id, lambda: self._open_account(event), commit,
                           event_id=event.event_id)

    def _open_account(self, event: CustomerAccountCreated) -> BankAccount:
        account_type = parse_account_type(event.account_type)
        try:
            currency_type = parse_enum(CurrencyType, event.currency_type, "currencyType")
        except InvalidEnumValue:
            currency_type = None

        if event.branch_code is None:
            logger.warning(f"Customer {event.customer_id} has no branch; opening account without one")

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            account = BankAccount(
                created_at=now,
                updated_at=now,
                account_number=self.sequences.next("account_number"),
                customer_id=event.customer_id,
                first_name=event.first_name,
                middle_name=event.middle_name,
                last_name=event.last_name,
                account_type=account_type,
                currency_type=currency_type,
                branch_code=event.branch_code,
                initial_balance=initial_balance_for(account_type),
                interest_rate=interest_rate_for(account_type),
                status=AccountStatus.ACTIVE,
                opened_at=now,
            )
            self.storage.insert(self.table_name, str(account.account_number), account.to_dict(),
                                unique_fields=["customer_id"])

            created = BankAccountCreated(
                account_number=account.account_number,
                customer_id=account.customer_id,
                first_name=account.first_name,
                middle_name=account.middle_name,
                last_name=account.last_name,
                branch_code=account.branch_code,
                account_type=account.account_type.value,
                initial_balance=account.initial_balance,
                interest_rate=account.interest_rate,
                account_status=account.status.value,
            )
            published = self.publisher.publish(created)

        log_action(
            logger, "info",
            f"Account {account.account_number} opened for customer {account.customer_id}",
            action="open_account", resource=f"account:{account.account_number}",
            event_id=created.event_id,
            extra={"account_type": account_type.value, "event_published": published}
        )
        return account

    def get_account(self, account_number: int) -> BankAccount:
        """Get account by number"""
        data = self.storage.load(self.table_name, str(account_number))
        if not data:
            raise ResourceNotFound(f"Account {account_number} not found")
        return BankAccount.from_dict(data)

    def find_account(self, account_number: int) -> Optional[BankAccount]:
        data = self.storage.load(self.table_name, str(account_number))
        return BankAccount.from_dict(data) if data else None

    def list_accounts(self, customer_id: Optional[int] = None,
                      branch_code: Optional[str] = None) -> List[BankAccount]:
        """List accounts, optionally filtered by customer and/or branch"""
        filters = {}
        if customer_id is not None:
            filters["customer_id"] = customer_id
        if branch_code is not None:
            filters["branch_code"] = branch_code
        records = self.storage.find(self.table_name, filters)
        return sorted((BankAccount.from_dict(r) for r in records), key=lambda a: a.account_number)

    def update_status(self, account_number: int, status: Union[AccountStatus, str]) -> BankAccount:
        """Administrative status change"""
        status = parse_enum(AccountStatus, status, "accountStatus")
        with self.storage.atomic():
            account = self.get_account(account_number)
            previous = account.status
            account.status = status
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, str(account_number), account.to_dict(),
                              unique_fields=["customer_id"])

        log_action(
            logger, "info",
            f"Account {account_number} status changed from {previous.value} to {status.value}",
            action="update_account_status", resource=f"account:{account_number}"
        )
        return account
