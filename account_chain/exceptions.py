"""
Error Taxonomy Module

Every failure the provisioning chain can raise. Event handlers let these
propagate so the message is not committed; synchronous callers (deposit,
withdraw, lifecycle transitions) receive them directly with a message.
"""

from typing import Optional


class AccountChainError(Exception):
    """Base class for all account chain errors"""


class DuplicateEvent(AccountChainError):
    """Natural key already processed - resolved locally by skip + commit"""

    def __init__(self, natural_key: str, message: Optional[str] = None):
        self.natural_key = natural_key
        super().__init__(message or f"Already processed: {natural_key}")


class DuplicateRecordError(DuplicateEvent):
    """A storage uniqueness constraint rejected an insert"""

    def __init__(self, table: str, field: str, value: str):
        self.table = table
        self.field = field
        self.value = value
        super().__init__(
            f"{table}.{field}={value}",
            f"Duplicate value for {table}.{field}: {value}"
        )


class ResourceNotFound(AccountChainError):
    """Requested entity does not exist"""


class InvalidTransition(AccountChainError):
    """Application lifecycle transition not allowed from the current state"""


class ValidationError(AccountChainError, ValueError):
    """Malformed input - never succeeds on retry"""


class InvalidEnumValue(ValidationError):
    """An enum field in an event payload could not be parsed"""

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"Invalid value for {field}: {value!r}")


class InvalidBranch(ValidationError):
    """Branch code malformed, unknown or not active"""


class BusinessRejection(AccountChainError):
    """Synchronous business rule rejection returned to the caller"""


class InvalidAmount(BusinessRejection, ValidationError):
    """Amount must be strictly positive"""


class InsufficientFunds(BusinessRejection):
    """Withdrawal exceeds the derived balance"""

    def __init__(self, available, requested):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds. Available: {available}, Requested: {requested}"
        )


class AccountNotActive(BusinessRejection):
    """Account is not ACTIVE and cannot transact"""


class DownstreamUnavailable(AccountChainError):
    """External collaborator (branch directory, notifier) unreachable"""


class NotifierError(DownstreamUnavailable):
    """Notification channel failed to deliver"""


class PublishFailure(AccountChainError):
    """Event could not be handed to the bus"""


class ConcurrentModification(AccountChainError):
    """Optimistic compare-and-set lost too many times"""
