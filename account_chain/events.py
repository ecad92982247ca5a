"""
Event Contracts Module

Topic names and payload schemas exchanged between the stages of the chain.
Payloads travel as JSON objects with camelCase keys; decimals are sent as
strings and timestamps as ISO-8601. Enum-valued fields stay plain strings on
the wire so each consumer decides how to parse them.
"""

import typing
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional, Type, TypeVar

from .exceptions import InvalidEnumValue
from .storage import encode_value, decode_value


E = TypeVar("E", bound=Enum)


class Topics(Enum):
    """Event topic names"""
    APPLICATION_APPROVED = "application-approved"
    CUSTOMER_ACCOUNT_CREATED = "customer-account-created"
    BANK_ACCOUNT_CREATED = "bank-account-created"
    TRANSACTION_CREATED = "transaction-created"
    BRANCH_ASSIGNMENT = "branch-assignment-events"


class EventSources:
    """Values of the eventSource field, one per emitting service"""
    ACCOUNT_OPENING = "account-opening-service"
    CUSTOMER_ACCOUNT = "customer-account-service"
    BANK_ACCOUNT = "bank-account-service"
    TRANSACTION = "transaction-service"


def dead_letter_topic(topic: str, suffix: str = ".DLT") -> str:
    """Name of the dead-letter topic for ``topic``"""
    return f"{topic}{suffix}"


def parse_enum(enum_class: Type[E], value: Any, field_name: str) -> E:
    """Parse an enum member from its wire string (case-insensitive)"""
    if isinstance(value, enum_class):
        return value
    if isinstance(value, str):
        try:
            return enum_class(value.strip().upper())
        except ValueError:
            pass
    raise InvalidEnumValue(field_name, value)


def _camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.title() for part in rest)


def new_event_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventPayload:
    """Mixin giving payload dataclasses their camelCase wire form"""

    topic: Topics

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire dictionary"""
        return {_camel(f.name): encode_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create from a wire dictionary; unknown keys are ignored"""
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in data:
                kwargs[f.name] = decode_value(hints.get(f.name), data[key])
        return cls(**kwargs)


@dataclass
class ApplicationApproved(EventPayload):
    """Emitted once when an application reaches APPROVED; key = applicationId"""
    application_id: int
    first_name: str
    last_name: str
    email: str
    phone_number: str
    identity_type: str
    id_ref_number: str
    account_type: str
    currency_type: str
    kyc_status: str
    application_date: datetime
    middle_name: Optional[str] = None
    region: Optional[str] = None
    province: Optional[str] = None
    municipality: Optional[str] = None
    street: Optional[str] = None
    event_id: str = field(default_factory=new_event_id)
    event_timestamp: datetime = field(default_factory=utc_now)
    event_source: str = EventSources.ACCOUNT_OPENING

    topic = Topics.APPLICATION_APPROVED

    @property
    def key(self) -> str:
        return str(self.application_id)


@dataclass
class CustomerAccountCreated(EventPayload):
    """Emitted when a customer record exists for an approved application; key = customerId"""
    customer_id: int
    application_id: int
    first_name: str
    last_name: str
    email: str
    phone_number: str
    account_type: str
    currency_type: str
    kyc_status: str
    middle_name: Optional[str] = None
    branch_code: Optional[str] = None
    kyc_verified_date: Optional[datetime] = None
    event_id: str = field(default_factory=new_event_id)
    event_timestamp: datetime = field(default_factory=utc_now)
    event_source: str = EventSources.CUSTOMER_ACCOUNT

    topic = Topics.CUSTOMER_ACCOUNT_CREATED

    @property
    def key(self) -> str:
        return str(self.customer_id)


@dataclass
class BankAccountCreated(EventPayload):
    """Emitted when a bank account is opened; key = accountNumber"""
    account_number: int
    customer_id: int
    first_name: str
    last_name: str
    account_type: str
    initial_balance: Decimal
    interest_rate: Decimal
    account_status: str
    middle_name: Optional[str] = None
    branch_code: Optional[str] = None
    event_id: str = field(default_factory=new_event_id)
    event_timestamp: datetime = field(default_factory=utc_now)
    event_source: str = EventSources.BANK_ACCOUNT

    topic = Topics.BANK_ACCOUNT_CREATED

    @property
    def key(self) -> str:
        return str(self.account_number)


@dataclass
class TransactionCreated(EventPayload):
    """Emitted after every ledger append; key = transactionId"""
    transaction_id: str
    account_number: int
    transaction_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    status: str
    transaction_date: datetime
    customer_id: Optional[int] = None
    description: Optional[str] = None
    reference_number: Optional[str] = None
    event_id: str = field(default_factory=new_event_id)
    event_timestamp: datetime = field(default_factory=utc_now)
    event_source: str = EventSources.TRANSACTION

    topic = Topics.TRANSACTION_CREATED

    @property
    def key(self) -> str:
        return self.transaction_id


@dataclass
class BranchAssignmentEvent(EventPayload):
    """Analytics event for every branch assignment or reassignment; key = customerId"""
    customer_id: int
    branch_code: str
    assignment_reason: str
    application_id: Optional[int] = None
    event_id: str = field(default_factory=new_event_id)
    event_timestamp: datetime = field(default_factory=utc_now)
    event_source: str = EventSources.CUSTOMER_ACCOUNT

    topic = Topics.BRANCH_ASSIGNMENT

    @property
    def key(self) -> str:
        return str(self.customer_id)
