"""
Application Lifecycle Module

Account-opening applications from intake to approval or rejection.

    PENDING -> SUBMITTED -> UNDER_REVIEW -> APPROVED | REJECTED
    PENDING / SUBMITTED / UNDER_REVIEW -> CANCELLED

Approval is the only transition that emits an event: ``ApplicationApproved``
starts the provisioning chain.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from .events import ApplicationApproved, parse_enum
from .exceptions import InvalidTransition, ResourceNotFound, ValidationError
from .logging_config import log_action
from .publishing import EventPublisher
from .storage import StorageInterface, StorageRecord, StorageSequenceSource


logger = logging.getLogger("account_chain.applications")


EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


class ApplicationStatus(Enum):
    """Application lifecycle states"""
    PENDING = "PENDING"             # Received, not yet submitted
    SUBMITTED = "SUBMITTED"         # Waiting for a reviewer
    UNDER_REVIEW = "UNDER_REVIEW"   # Reviewer assigned
    APPROVED = "APPROVED"           # Terminal - chain started
    REJECTED = "REJECTED"           # Terminal
    CANCELLED = "CANCELLED"         # Terminal - withdrawn outside the review flow


TERMINAL_STATUSES = {ApplicationStatus.APPROVED, ApplicationStatus.REJECTED, ApplicationStatus.CANCELLED}


class KYCStatus(Enum):
    """KYC verification status"""
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class IdentityType(Enum):
    """Identity document presented at intake"""
    PASSPORT = "PASSPORT"
    DRIVER_LICENSE = "DRIVER_LICENSE"
    NATIONAL_ID = "NATIONAL_ID"


class AccountType(Enum):
    """Bank account classes"""
    SAVINGS = "SAVINGS"
    CURRENT = "CURRENT"
    TIME_DEPOSIT = "TIME_DEPOSIT"
    JOIN_ACCOUNT = "JOIN_ACCOUNT"


class CurrencyType(Enum):
    """Supported account currencies"""
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    JPY = "JPY"
    INR = "INR"
    AUD = "AUD"
    CAD = "CAD"
    CHF = "CHF"
    CNY = "CNY"
    SEK = "SEK"
    NZD = "NZD"


@dataclass
class Application(StorageRecord):
    """Account-opening application"""
    application_id: int
    first_name: str
    last_name: str
    email: str
    phone_number: str
    identity_type: IdentityType
    id_ref_number: str
    account_type: AccountType
    currency_type: CurrencyType
    application_date: datetime
    status: ApplicationStatus = ApplicationStatus.PENDING
    kyc_status: KYCStatus = KYCStatus.PENDING
    middle_name: Optional[str] = None
    region: Optional[str] = None
    province: Optional[str] = None
    municipality: Optional[str] = None
    street: Optional[str] = None
    decided_at: Optional[datetime] = None
    decision_note: Optional[str] = None

    @property
    def full_name(self) -> str:
        names = [self.first_name, self.middle_name, self.last_name]
        return " ".join(n for n in names if n)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ApplicationManager:
    """
    Owns the application state machine and emits ApplicationApproved
    """

    def __init__(self, storage: StorageInterface, sequences: StorageSequenceSource,
                 publisher: EventPublisher):
        self.storage = storage
        self.sequences = sequences
        self.publisher = publisher
        self.table_name = "applications"

    def apply(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone_number: str,
        identity_type: Union[IdentityType, str],
        id_ref_number: str,
        account_type: Union[AccountType, str] = AccountType.SAVINGS,
        currency_type: Union[CurrencyType, str] = CurrencyType.USD,
        middle_name: Optional[str] = None,
        region: Optional[str] = None,
        province: Optional[str] = None,
        municipality: Optional[str] = None,
        street: Optional[str] = None
    ) -> Application:
        """
        Take in a new application (status PENDING, KYC PENDING)

        Raises:
            ValidationError: missing names, bad email or unknown enum value
        """
        if not first_name or not first_name.strip() or not last_name or not last_name.strip():
            raise ValidationError("First and last name are required")
        if not email or not EMAIL_PATTERN.match(email):
            raise ValidationError(f"Invalid email format: {email!r}")
        if not id_ref_number or not id_ref_number.strip():
            raise ValidationError("Identity reference number is required")

        identity_type = parse_enum(IdentityType, identity_type, "identityType")
        account_type = parse_enum(AccountType, account_type, "accountType")
        currency_type = parse_enum(CurrencyType, currency_type, "currencyType")

        now = datetime.now(timezone.utc)
        application = Application(
            created_at=now,
            updated_at=now,
            application_id=self.sequences.next("application_id"),
            first_name=first_name.strip(),
            middle_name=middle_name,
            last_name=last_name.strip(),
            email=email,
            phone_number=phone_number,
            identity_type=identity_type,
            id_ref_number=id_ref_number.strip(),
            account_type=account_type,
            currency_type=currency_type,
            application_date=now,
            region=region,
            province=province,
            municipality=municipality,
            street=street,
        )
        self.storage.insert(self.table_name, str(application.application_id), application.to_dict())

        log_action(
            logger, "info", f"Application {application.application_id} received",
            action="apply", resource=f"application:{application.application_id}",
            extra={"account_type": account_type.value}
        )
        return application

    def get_application(self, application_id: int) -> Application:
        """Get application by ID"""
        data = self.storage.load(self.table_name, str(application_id))
        if not data:
            raise ResourceNotFound(f"Application {application_id} not found")
        return Application.from_dict(data)

    def list_applications(self, status: Optional[ApplicationStatus] = None) -> List[Application]:
        """List applications, optionally filtered by status"""
        if status is None:
            records = self.storage.load_all(self.table_name)
        else:
            records = self.storage.find(self.table_name, {"status": status.value})
        applications = [Application.from_dict(r) for r in records]
        return sorted(applications, key=lambda a: a.application_id)

    def submit(self, application_id: int) -> Application:
        """PENDING -> SUBMITTED"""
        return self._transition(application_id, {ApplicationStatus.PENDING},
                                ApplicationStatus.SUBMITTED, "submit")

    def start_review(self, application_id: int) -> Application:
        """SUBMITTED -> UNDER_REVIEW"""
        return self._transition(application_id, {ApplicationStatus.SUBMITTED},
                                ApplicationStatus.UNDER_REVIEW, "start_review")

    def set_kyc(self, application_id: int, kyc_status: Union[KYCStatus, str]) -> Application:
        """Record the KYC outcome; allowed in any non-terminal state, status unchanged"""
        kyc_status = parse_enum(KYCStatus, kyc_status, "kycStatus")
        with self.storage.atomic():
            application = self.get_application(application_id)
            if application.is_terminal:
                raise InvalidTransition(
                    f"Cannot update KYC of application {application_id} in status "
                    f"{application.status.value}"
                )
            application.kyc_status = kyc_status
            application.updated_at = datetime.now(timezone.utc)
            self._save(application)

        log_action(
            logger, "info", f"Application {application_id} KYC set to {kyc_status.value}",
            action="set_kyc", resource=f"application:{application_id}"
        )
        return application

    def approve(self, application_id: int, note: Optional[str] = None) -> Application:
        """
        UNDER_REVIEW with KYC VERIFIED -> APPROVED, emitting ApplicationApproved.

        The status write and the emit run in one atomic block. With an outbox
        publisher they commit together; a direct publisher sends after the
        commit, and a failed emit is logged while the approval stands.
        """
        with self.storage.atomic():
            application = self.get_application(application_id)
            if application.status != ApplicationStatus.UNDER_REVIEW:
                raise InvalidTransition(
                    f"Cannot approve application {application_id} in status {application.status.value}"
                )
            if application.kyc_status != KYCStatus.VERIFIED:
                raise InvalidTransition(
                    f"Cannot approve application {application_id} with KYC status "
                    f"{application.kyc_status.value}"
                )

            now = datetime.now(timezone.utc)
            application.status = ApplicationStatus.APPROVED
            application.decided_at = now
            application.decision_note = note
            application.updated_at = now
            self._save(application)

            event = self._approved_event(application)
            published = self.publisher.publish(event)

        log_action(
            logger, "info", f"Application {application_id} approved",
            action="approve", resource=f"application:{application_id}",
            event_id=event.event_id, extra={"event_published": published}
        )
        return application

    def reject(self, application_id: int, note: Optional[str] = None) -> Application:
        """UNDER_REVIEW with KYC REJECTED -> REJECTED"""
        with self.storage.atomic():
            application = self.get_application(application_id)
            if application.status != ApplicationStatus.UNDER_REVIEW:
                raise InvalidTransition(
                    f"Cannot reject application {application_id} in status {application.status.value}"
                )
            if application.kyc_status != KYCStatus.REJECTED:
                raise InvalidTransition(
                    f"Cannot reject application {application_id} with KYC status "
                    f"{application.kyc_status.value}"
                )
            now = datetime.now(timezone.utc)
            application.status = ApplicationStatus.REJECTED
            application.decided_at = now
            application.decision_note = note
            application.updated_at = now
            self._save(application)

        log_action(
            logger, "info", f"Application {application_id} rejected",
            action="reject", resource=f"application:{application_id}"
        )
        return application

    def cancel(self, application_id: int, note: Optional[str] = None) -> Application:
        """Withdraw a non-terminal application"""
        application = self._transition(
            application_id,
            {ApplicationStatus.PENDING, ApplicationStatus.SUBMITTED, ApplicationStatus.UNDER_REVIEW},
            ApplicationStatus.CANCELLED, "cancel"
        )
        if note:
            application.decision_note = note
            self._save(application)
        return application

    def _transition(self, application_id: int, allowed_from: set,
                    target: ApplicationStatus, action: str) -> Application:
        with self.storage.atomic():
            application = self.get_application(application_id)
            if application.status not in allowed_from:
                raise InvalidTransition(
                    f"Cannot {action} application {application_id} in status {application.status.value}"
                )
            now = datetime.now(timezone.utc)
            application.status = target
            application.updated_at = now
            if target in TERMINAL_STATUSES:
                application.decided_at = now
            self._save(application)

        log_action(
            logger, "info", f"Application {application_id} moved to {target.value}",
            action=action, resource=f"application:{application_id}"
        )
        return application

    def _approved_event(self, application: Application) -> ApplicationApproved:
        return ApplicationApproved(
            application_id=application.application_id,
            first_name=application.first_name,
            middle_name=application.middle_name,
            last_name=application.last_name,
            email=application.email,
            phone_number=application.phone_number,
            region=application.region,
            province=application.province,
            municipality=application.municipality,
            street=application.street,
            identity_type=application.identity_type.value,
            id_ref_number=application.id_ref_number,
            account_type=application.account_type.value,
            currency_type=application.currency_type.value,
            kyc_status=application.kyc_status.value,
            application_date=application.application_date,
        )

    def _save(self, application: Application) -> None:
        self.storage.save(self.table_name, str(application.application_id), application.to_dict())
