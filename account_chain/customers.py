"""
Customer Provisioner Module

Consumes ``ApplicationApproved`` and creates exactly one customer record per
application, assigns a branch and emits ``CustomerAccountCreated``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Union

from .applications import AccountType, CurrencyType, IdentityType, KYCStatus
from .branches import BranchAssignment, BranchResolver
from .bus import Message, Commit
from .consumer import IdempotencyGuard, parse_payload
from .events import ApplicationApproved, CustomerAccountCreated, parse_enum
from .exceptions import AccountChainError, DuplicateRecordError, ResourceNotFound, ValidationError
from .logging_config import log_action
from .publishing import EventPublisher
from .storage import StorageInterface, StorageRecord, StorageSequenceSource


logger = logging.getLogger("account_chain.customers")


CUSTOMERS_TABLE = "customers"
UNIQUE_FIELDS = ["application_id", "email"]


@dataclass
class CustomerAccount(StorageRecord):
    """Customer created from an approved application"""
    customer_id: int
    application_id: int
    first_name: str
    last_name: str
    email: str
    phone_number: str
    identity_type: IdentityType
    id_ref_number: str
    account_type: AccountType
    currency_type: CurrencyType
    kyc_status: KYCStatus
    middle_name: Optional[str] = None
    region: Optional[str] = None
    province: Optional[str] = None
    municipality: Optional[str] = None
    street: Optional[str] = None
    branch_code: Optional[str] = None  # None until a branch is assigned
    assignment_reason: Optional[str] = None
    kyc_verified_date: Optional[datetime] = None
    is_active: bool = True

    @property
    def full_name(self) -> str:
        names = [self.first_name, self.middle_name, self.last_name]
        return " ".join(n for n in names if n)


@dataclass
class ContactInfo:
    """Addresses used for customer notifications"""
    customer_id: int
    full_name: str
    email: Optional[str]
    phone_number: Optional[str]


class CustomerProvisioner:
    """
    Creates customers from approved applications (idempotent on applicationId)
    """

    consumer_group = "customer-account-service"

    def __init__(self, storage: StorageInterface, sequences: StorageSequenceSource,
                 resolver: BranchResolver, publisher: EventPublisher):
        self.storage = storage
        self.sequences = sequences
        self.resolver = resolver
        self.publisher = publisher
        self.table_name = CUSTOMERS_TABLE
        self.guard = IdempotencyGuard(storage, self.table_name, "application_id", self.consumer_group)

    def handle_application_approved(self, message: Message, commit: Commit) -> None:
        """Event handler for the application-approved topic"""
        event = parse_payload(ApplicationApproved, message.payload)
        self.guard.process(event.application_id, lambda: self._provision(event), commit,
                           event_id=event.event_id)

    def _provision(self, event: ApplicationApproved) -> CustomerAccount:
        identity_type = parse_enum(IdentityType, event.identity_type, "identityType")
        account_type = parse_enum(AccountType, event.account_type, "accountType")
        currency_type = parse_enum(CurrencyType, event.currency_type, "currencyType")
        kyc_status = parse_enum(KYCStatus, event.kyc_status, "kycStatus")

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            customer = CustomerAccount(
                created_at=now,
                updated_at=now,
                customer_id=self.sequences.next("customer_id"),
                application_id=event.application_id,
                first_name=event.first_name,
                middle_name=event.middle_name,
                last_name=event.last_name,
                email=event.email,
                phone_number=event.phone_number,
                identity_type=identity_type,
                id_ref_number=event.id_ref_number,
                account_type=account_type,
                currency_type=currency_type,
                kyc_status=kyc_status,
                region=event.region,
                province=event.province,
                municipality=event.municipality,
                street=event.street,
                kyc_verified_date=now if kyc_status == KYCStatus.VERIFIED else None,
            )
            try:
                self.storage.insert(self.table_name, str(customer.customer_id),
                                    customer.to_dict(), unique_fields=UNIQUE_FIELDS)
            except DuplicateRecordError as e:
                if e.field == "email":
                    raise ValidationError(
                        f"Email {event.email} already belongs to another customer"
                    ) from e
                raise

            assignment = self._assign_branch(customer)
            if assignment is not None:
                customer.branch_code = assignment.branch_code
                customer.assignment_reason = assignment.reason.value
                customer.updated_at = datetime.now(timezone.utc)
                self._save(customer)

            created = self._created_event(customer)
            published = self.publisher.publish(created)

        log_action(
            logger, "info",
            f"Customer {customer.customer_id} created for application {customer.application_id}",
            action="create_customer", resource=f"customer:{customer.customer_id}",
            event_id=created.event_id,
            extra={"branch_code": customer.branch_code, "event_published": published}
        )
        return customer

    def _assign_branch(self, customer: CustomerAccount) -> Optional[BranchAssignment]:
        try:
            return self.resolver.assign(customer)
        except AccountChainError as e:
            # A branchless customer is valid; repair later with reassign_branch
            log_action(
                logger, "warning",
                f"Branch assignment failed for customer {customer.customer_id}: {e}",
                action="assign_branch", resource=f"customer:{customer.customer_id}"
            )
            return None

    def _created_event(self, customer: CustomerAccount) -> CustomerAccountCreated:
        return CustomerAccountCreated(
            customer_id=customer.customer_id,
            application_id=customer.application_id,
            first_name=customer.first_name,
            middle_name=customer.middle_name,
            last_name=customer.last_name,
            email=customer.email,
            phone_number=customer.phone_number,
            account_type=customer.account_type.value,
            currency_type=customer.currency_type.value,
            branch_code=customer.branch_code,
            kyc_status=customer.kyc_status.value,
            kyc_verified_date=customer.kyc_verified_date,
        )

    def get_customer(self, customer_id: int) -> CustomerAccount:
        """Get customer by ID"""
        data = self.storage.load(self.table_name, str(customer_id))
        if not data:
            raise ResourceNotFound(f"Customer {customer_id} not found")
        return CustomerAccount.from_dict(data)

    def get_customer_by_application(self, application_id: int) -> Optional[CustomerAccount]:
        """Get the customer created for an application"""
        data = self.storage.find_one(self.table_name, {"application_id": application_id})
        return CustomerAccount.from_dict(data) if data else None

    def customer_exists(self, application_id: int) -> bool:
        return self.guard.is_processed(application_id)

    def list_customers(self, branch_code: Optional[str] = None) -> List[CustomerAccount]:
        """List customers, optionally only those at one branch"""
        if branch_code is None:
            records = self.storage.load_all(self.table_name)
        else:
            records = self.storage.find(self.table_name, {"branch_code": branch_code})
        return sorted((CustomerAccount.from_dict(r) for r in records), key=lambda c: c.customer_id)

    def reassign_branch(self, customer_id: int, target_branch: str) -> CustomerAccount:
        """
        Move a customer to another branch (also used to repair branchless customers)

        Raises:
            ResourceNotFound: unknown customer
            InvalidBranch: target malformed, unknown or not ACTIVE
        """
        with self.storage.atomic():
            customer = self.get_customer(customer_id)
            assignment = self.resolver.reassign(customer, target_branch)
            previous = customer.branch_code
            customer.branch_code = assignment.branch_code
            customer.assignment_reason = assignment.reason.value
            customer.updated_at = datetime.now(timezone.utc)
            self._save(customer)

        log_action(
            logger, "info", f"Customer {customer_id} reassigned from {previous} to {target_branch}",
            action="reassign_branch", resource=f"customer:{customer_id}"
        )
        return customer

    def update_kyc_status(self, customer_id: int, kyc_status: Union[KYCStatus, str]) -> CustomerAccount:
        """Update KYC status; VERIFIED stamps the verification date"""
        kyc_status = parse_enum(KYCStatus, kyc_status, "kycStatus")
        with self.storage.atomic():
            customer = self.get_customer(customer_id)
            now = datetime.now(timezone.utc)
            customer.kyc_status = kyc_status
            if kyc_status == KYCStatus.VERIFIED:
                customer.kyc_verified_date = now
            customer.updated_at = now
            self._save(customer)

        log_action(
            logger, "info", f"Customer {customer_id} KYC status set to {kyc_status.value}",
            action="update_kyc", resource=f"customer:{customer_id}"
        )
        return customer

    def update_contact(
        self,
        customer_id: int,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        region: Optional[str] = None,
        province: Optional[str] = None,
        municipality: Optional[str] = None,
        street: Optional[str] = None
    ) -> CustomerAccount:
        """Update contact fields; None or blank values leave the field unchanged"""
        updates = {
            "email": email,
            "phone_number": phone_number,
            "region": region,
            "province": province,
            "municipality": municipality,
            "street": street,
        }
        with self.storage.atomic():
            customer = self.get_customer(customer_id)
            for name, value in updates.items():
                if value is not None and value.strip():
                    setattr(customer, name, value.strip())
            customer.updated_at = datetime.now(timezone.utc)
            try:
                self._save(customer)
            except DuplicateRecordError as e:
                raise ValidationError(f"Email {customer.email} already belongs to another customer") from e

        log_action(
            logger, "info", f"Customer {customer_id} contact details updated",
            action="update_contact", resource=f"customer:{customer_id}"
        )
        return customer

    def get_contact(self, customer_id: int) -> Optional[ContactInfo]:
        """Notification addresses for a customer, or None if unknown"""
        data = self.storage.load(self.table_name, str(customer_id))
        if not data:
            return None
        customer = CustomerAccount.from_dict(data)
        return ContactInfo(
            customer_id=customer.customer_id,
            full_name=customer.full_name,
            email=customer.email,
            phone_number=customer.phone_number,
        )

    def _save(self, customer: CustomerAccount) -> None:
        self.storage.save(self.table_name, str(customer.customer_id), customer.to_dict(),
                          unique_fields=UNIQUE_FIELDS)
