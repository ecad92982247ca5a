"""
Transaction Ledger Module

Append-only record of monetary movements per bank account. The balance is
never stored: it is the ``balance_after`` of the most recent entry (by
transaction date, then per-account sequence) or zero when the account has no
entries.

Appends are serialized per account with a compare-and-set on a small head
record (last transaction id, sequence, version). Two writers that read the
same head cannot both append; the loser re-reads the balance and retries.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Union

from .accounts import AccountStatus
from .bus import Message, Commit
from .consumer import IdempotencyGuard, parse_payload
from .events import BankAccountCreated, TransactionCreated
from .exceptions import (
    AccountNotActive, ConcurrentModification,
    InsufficientFunds, InvalidAmount, ResourceNotFound, ValidationError
)
from .logging_config import log_action
from .publishing import EventPublisher
from .storage import StorageInterface, StorageRecord, StorageSequenceSource


logger = logging.getLogger("account_chain.ledger")


ENTRIES_TABLE = "ledger_entries"
HEADS_TABLE = "ledger_heads"

OPENING_DESCRIPTION = "Initial deposit - Account opening"

Amount = Union[Decimal, int, str, float]


class TransactionType(Enum):
    """Kinds of monetary movement"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    PAYMENT = "PAYMENT"
    TRANSFER = "TRANSFER"
    WIRE_TRANSFER = "WIRE_TRANSFER"
    CASH_ADVANCE = "CASH_ADVANCE"


CREDIT_TYPES = {TransactionType.DEPOSIT}


class TransactionStatus(Enum):
    """Entry status; appended entries are always COMPLETED"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REVERSED = "REVERSED"
    CANCELLED = "CANCELLED"


@dataclass
class LedgerEntry(StorageRecord):
    """Immutable ledger entry"""
    transaction_id: str
    account_number: int
    transaction_type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    transaction_date: datetime
    sequence: int  # Per-account order, breaks ties between equal dates
    status: TransactionStatus = TransactionStatus.COMPLETED
    customer_id: Optional[int] = None
    description: Optional[str] = None
    reference_number: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        if self.transaction_type in CREDIT_TYPES:
            return self.amount
        return -self.amount


# Reserved for the seed entry written from BankAccountCreated
OPENING_REFERENCE_PREFIX = "INITIAL-"


def opening_reference(account_number: int) -> str:
    return f"{OPENING_REFERENCE_PREFIX}{account_number}"


def _check_reference(reference_number: Optional[str]) -> None:
    if reference_number and reference_number.upper().startswith(OPENING_REFERENCE_PREFIX):
        raise ValidationError(
            f"Reference {reference_number!r} uses the reserved {OPENING_REFERENCE_PREFIX} prefix"
        )


def to_amount(value: Amount) -> Decimal:
    """Coerce to a strictly positive Decimal"""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"Invalid amount: {value!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {value}")
    return amount


def _latest(entries: List[LedgerEntry]) -> Optional[LedgerEntry]:
    if not entries:
        return None
    return max(entries, key=lambda e: (e.transaction_date, e.sequence))


class TransactionLedger:
    """
    Per-account append-only ledger with derived balances
    """

    consumer_group = "transaction-service"

    def __init__(self, storage: StorageInterface, sequences: StorageSequenceSource,
                 publisher: EventPublisher, accounts=None, max_append_retries: int = 5):
        """
        Args:
            storage: Storage backend
            sequences: Source of transaction id sequence numbers
            publisher: Where TransactionCreated goes
            accounts: Optional account registry (``find_account(number)``); when
                given, deposits and withdrawals require a known ACTIVE account
            max_append_retries: Lost compare-and-set races tolerated per append
        """
        self.storage = storage
        self.sequences = sequences
        self.publisher = publisher
        self.accounts = accounts
        self.max_append_retries = max_append_retries
        self.guard = IdempotencyGuard(storage, ENTRIES_TABLE, "reference_number", self.consumer_group)

    def handle_bank_account_created(self, message: Message, commit: Commit) -> None:
        """Event handler for the bank-account-created topic: write the opening entry"""
        event = parse_payload(BankAccountCreated, message.payload)
        if event.initial_balance <= 0:
            logger.info(f"Account {event.account_number} opened with zero balance, no opening entry")
            commit()
            return

        reference = opening_reference(event.account_number)
        self.guard.process(
            reference,
            lambda: self._append(
                event.account_number, TransactionType.DEPOSIT, event.initial_balance,
                customer_id=event.customer_id, description=OPENING_DESCRIPTION,
                reference_number=reference
            ),
            commit,
            event_id=event.event_id
        )

    def deposit(self, account_number: int, amount: Amount, description: Optional[str] = None,
                reference_number: Optional[str] = None) -> LedgerEntry:
        """
        Credit an account

        Raises:
            InvalidAmount: amount not strictly positive
            ValidationError: reference_number uses the reserved opening prefix
            ResourceNotFound / AccountNotActive: with an account registry wired in,
                including an account whose opening deposit is not yet posted
        """
        amount = to_amount(amount)
        _check_reference(reference_number)
        customer_id = self._check_account(account_number)
        return self._append(account_number, TransactionType.DEPOSIT, amount,
                            customer_id=customer_id, description=description or "Deposit",
                            reference_number=reference_number)

    def withdraw(self, account_number: int, amount: Amount, description: Optional[str] = None,
                 reference_number: Optional[str] = None) -> LedgerEntry:
        """
        Debit an account; nothing is appended when funds are insufficient

        Raises:
            InvalidAmount: amount not strictly positive
            InsufficientFunds: amount greater than the current balance
            ValidationError: reference_number uses the reserved opening prefix
            ResourceNotFound / AccountNotActive: with an account registry wired in,
                including an account whose opening deposit is not yet posted
        """
        amount = to_amount(amount)
        _check_reference(reference_number)
        customer_id = self._check_account(account_number)
        return self._append(account_number, TransactionType.WITHDRAWAL, amount,
                            customer_id=customer_id, description=description or "Withdrawal",
                            reference_number=reference_number)

    def get_balance(self, account_number: int) -> Decimal:
        """Balance after the most recent entry, or zero"""
        latest = _latest(self._entries(account_number))
        return latest.balance_after if latest else Decimal("0")

    def get_transaction(self, transaction_id: str) -> LedgerEntry:
        data = self.storage.load(ENTRIES_TABLE, transaction_id)
        if not data:
            raise ResourceNotFound(f"Transaction {transaction_id} not found")
        return LedgerEntry.from_dict(data)

    def get_history(self, account_number: int) -> List[LedgerEntry]:
        """Entries for an account, newest first"""
        return sorted(self._entries(account_number),
                      key=lambda e: (e.transaction_date, e.sequence), reverse=True)

    def get_history_between(self, account_number: int, start: datetime,
                            end: datetime) -> List[LedgerEntry]:
        """Entries dated within [start, end], newest first"""
        return [e for e in self.get_history(account_number) if start <= e.transaction_date <= end]

    def _entries(self, account_number: int) -> List[LedgerEntry]:
        records = self.storage.find(ENTRIES_TABLE, {"account_number": account_number})
        return [LedgerEntry.from_dict(r) for r in records]

    def _check_account(self, account_number: int) -> Optional[int]:
        if self.accounts is None:
            return None
        account = self.accounts.find_account(account_number)
        if account is None:
            raise ResourceNotFound(f"Account {account_number} not found")
        if account.status != AccountStatus.ACTIVE:
            raise AccountNotActive(f"Account {account_number} is {account.status.value}")
        if account.initial_balance > 0 and not self.guard.is_processed(opening_reference(account_number)):
            raise AccountNotActive(f"Account {account_number} opening deposit pending")
        return account.customer_id

    def _append(self, account_number: int, transaction_type: TransactionType, amount: Decimal,
                customer_id: Optional[int] = None, description: Optional[str] = None,
                reference_number: Optional[str] = None) -> LedgerEntry:
        head_id = str(account_number)
        for attempt in range(1, self.max_append_retries + 1):
            # Head version is read before the balance so any append in between fails the CAS
            head = self.storage.load(HEADS_TABLE, head_id)
            version = head["version"] if head else 0
            latest = _latest(self._entries(account_number))
            balance = latest.balance_after if latest else Decimal("0")

            if transaction_type not in CREDIT_TYPES and amount > balance:
                log_action(
                    logger, "warning",
                    f"Rejected {transaction_type.value} of {amount} on {account_number}: insufficient funds",
                    action="withdraw", resource=f"account:{account_number}",
                    extra={"available": str(balance), "requested": str(amount)}
                )
                raise InsufficientFunds(balance, amount)

            now = datetime.now(timezone.utc)
            if latest and latest.transaction_date > now:
                now = latest.transaction_date
            sequence = (latest.sequence if latest else 0) + 1
            transaction_id = f"TXN-{now:%Y%m%d%H%M%S}-{self.sequences.next('transaction_id'):06d}"

            entry = LedgerEntry(
                created_at=now,
                updated_at=now,
                transaction_id=transaction_id,
                account_number=account_number,
                customer_id=customer_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_before=balance,
                balance_after=balance + amount if transaction_type in CREDIT_TYPES else balance - amount,
                transaction_date=now,
                sequence=sequence,
                description=description,
                reference_number=reference_number or f"{transaction_type.value[:3]}-{transaction_id}",
            )

            with self.storage.atomic():
                won = self.storage.compare_and_set(HEADS_TABLE, head_id, version, {
                    "account_number": account_number,
                    "last_transaction_id": transaction_id,
                    "sequence": sequence,
                })
                if won:
                    self.storage.insert(ENTRIES_TABLE, transaction_id, entry.to_dict(),
                                        unique_fields=["reference_number"])
                    published = self.publisher.publish(self._created_event(entry))

            if won:
                log_action(
                    logger, "info",
                    f"{transaction_type.value} {amount} on account {account_number}: "
                    f"{entry.balance_before} -> {entry.balance_after}",
                    action=transaction_type.value.lower(), resource=f"account:{account_number}",
                    extra={"transaction_id": transaction_id, "event_published": published}
                )
                return entry

            logger.debug(f"Lost append race on account {account_number} (attempt {attempt}), retrying")

        raise ConcurrentModification(
            f"Could not append to account {account_number} after {self.max_append_retries} attempts"
        )

    def _created_event(self, entry: LedgerEntry) -> TransactionCreated:
        return TransactionCreated(
            transaction_id=entry.transaction_id,
            account_number=entry.account_number,
            customer_id=entry.customer_id,
            transaction_type=entry.transaction_type.value,
            amount=entry.amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            status=entry.status.value,
            description=entry.description,
            reference_number=entry.reference_number,
            transaction_date=entry.transaction_date,
        )
