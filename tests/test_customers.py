"""
Tests for the Customer Provisioner
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from account_chain.applications import KYCStatus
from account_chain.branches import BranchResolver, BranchStatus, InMemoryBranchDirectory
from account_chain.bus import InMemoryEventBus, Message
from account_chain.customers import CustomerProvisioner
from account_chain.events import ApplicationApproved, Topics
from account_chain.exceptions import (
    InvalidBranch, InvalidEnumValue, ResourceNotFound, ValidationError
)
from account_chain.publishing import DirectPublisher
from account_chain.storage import InMemoryStorage, StorageSequenceSource


CANDIDATES = ["BR001", "BR002", "BR003"]


def approved_message(application_id=1001, email="juan@example.com", **overrides):
    event = ApplicationApproved(
        application_id=application_id,
        first_name="Juan",
        middle_name="Santos",
        last_name="Dela Cruz",
        email=email,
        phone_number="+639171234567",
        identity_type="PASSPORT",
        id_ref_number="P1234567",
        account_type="SAVINGS",
        currency_type="USD",
        kyc_status="VERIFIED",
        application_date=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
        region="NCR",
        street="Ayala Ave",
    )
    payload = event.to_dict()
    payload.update(overrides)
    return Message(Topics.APPLICATION_APPROVED.value, str(application_id), payload)


class TestProvisioning:
    """ApplicationApproved -> CustomerAccountCreated"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.bus = InMemoryEventBus()
        self.directory = InMemoryBranchDirectory({code: BranchStatus.ACTIVE for code in CANDIDATES})
        publisher = DirectPublisher(self.bus, self.storage)
        self.resolver = BranchResolver(self.directory, CANDIDATES, publisher, storage=self.storage)
        self.provisioner = CustomerProvisioner(
            self.storage, StorageSequenceSource(self.storage, {"customer_id": 5001}),
            self.resolver, publisher
        )

    def test_creates_customer_and_emits_event(self):
        """Test customer 5001 is created at BR001 and announced"""
        commit = Mock()
        self.provisioner.handle_application_approved(approved_message(), commit)

        commit.assert_called_once()
        customer = self.provisioner.get_customer(5001)
        assert customer.application_id == 1001
        assert customer.branch_code == "BR001"
        assert customer.assignment_reason == "AUTO_ASSIGNMENT"
        assert customer.kyc_status == KYCStatus.VERIFIED
        assert customer.kyc_verified_date is not None
        assert customer.full_name == "Juan Santos Dela Cruz"

        messages = self.bus.get_messages(Topics.CUSTOMER_ACCOUNT_CREATED.value)
        assert len(messages) == 1
        assert messages[0].key == "5001"
        payload = messages[0].payload
        assert payload["customerId"] == 5001
        assert payload["applicationId"] == 1001
        assert payload["branchCode"] == "BR001"
        assert payload["accountType"] == "SAVINGS"
        assert payload["eventSource"] == "customer-account-service"

        assert len(self.bus.get_messages(Topics.BRANCH_ASSIGNMENT.value)) == 1

    def test_replayed_event_creates_one_customer(self):
        """Test the same approval delivered many times yields one customer"""
        message = approved_message()
        commits = []
        for _ in range(5):
            commit = Mock()
            self.provisioner.handle_application_approved(message, commit)
            commits.append(commit)

        assert all(c.call_count == 1 for c in commits)
        assert len(self.provisioner.list_customers()) == 1
        assert len(self.bus.get_messages(Topics.CUSTOMER_ACCOUNT_CREATED.value)) == 1
        assert self.provisioner.customer_exists(1001)

    def test_new_event_id_same_application_is_duplicate(self):
        """Test idempotency is keyed on applicationId, not eventId"""
        self.provisioner.handle_application_approved(approved_message(eventId="evt-1"), Mock())
        self.provisioner.handle_application_approved(approved_message(eventId="evt-2"), Mock())

        assert len(self.provisioner.list_customers()) == 1

    def test_sequential_customer_ids(self):
        self.provisioner.handle_application_approved(approved_message(1001), Mock())
        self.provisioner.handle_application_approved(
            approved_message(1002, email="maria@example.com"), Mock())

        assert self.provisioner.get_customer_by_application(1002).customer_id == 5002
        assert self.provisioner.get_customer_by_application(9999) is None

    def test_invalid_enum_rejected_without_commit(self):
        """Test an unparseable enum raises and nothing is persisted"""
        commit = Mock()
        with pytest.raises(InvalidEnumValue):
            self.provisioner.handle_application_approved(approved_message(accountType="PLATINUM"), commit)

        commit.assert_not_called()
        assert self.provisioner.list_customers() == []
        assert self.bus.get_messages() == []

    def test_malformed_payload(self):
        commit = Mock()
        message = Message(Topics.APPLICATION_APPROVED.value, "1001", {"applicationId": 1001})
        with pytest.raises(ValidationError):
            self.provisioner.handle_application_approved(message, commit)
        commit.assert_not_called()

    def test_lowercase_enums_accepted(self):
        self.provisioner.handle_application_approved(
            approved_message(accountType="time_deposit", kycStatus="verified"), Mock())
        assert self.provisioner.get_customer(5001).account_type.value == "TIME_DEPOSIT"

    def test_fallback_branch_when_directory_down(self):
        """Test a directory outage still yields a branch"""
        self.directory.available = False
        self.provisioner.handle_application_approved(approved_message(), Mock())

        customer = self.provisioner.get_customer(5001)
        assert customer.branch_code == "BR001"
        assert customer.assignment_reason == "FALLBACK_ASSIGNMENT"

    def test_resolver_failure_leaves_customer_branchless(self):
        """Test an assignment error does not block provisioning"""
        self.resolver.assign = Mock(side_effect=InvalidBranch("no branches configured"))
        commit = Mock()

        self.provisioner.handle_application_approved(approved_message(), commit)

        commit.assert_called_once()
        customer = self.provisioner.get_customer(5001)
        assert customer.branch_code is None
        payload = self.bus.get_payloads(Topics.CUSTOMER_ACCOUNT_CREATED.value)[0]
        assert payload["branchCode"] is None

    def test_email_clash_is_validation_error(self):
        """Test a second application with a taken email is rejected"""
        self.provisioner.handle_application_approved(approved_message(1001), Mock())
        commit = Mock()

        with pytest.raises(ValidationError):
            self.provisioner.handle_application_approved(approved_message(1002), commit)

        commit.assert_not_called()
        assert len(self.provisioner.list_customers()) == 1
        assert not self.provisioner.customer_exists(1002)


class TestCustomerUpdates:
    """Queries and updates on existing customers"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.bus = InMemoryEventBus()
        self.directory = InMemoryBranchDirectory({
            "BR001": BranchStatus.ACTIVE,
            "BR002": BranchStatus.ACTIVE,
            "BR003": BranchStatus.INACTIVE,
        })
        publisher = DirectPublisher(self.bus, self.storage)
        resolver = BranchResolver(self.directory, CANDIDATES, publisher, storage=self.storage)
        self.provisioner = CustomerProvisioner(
            self.storage, StorageSequenceSource(self.storage, {"customer_id": 5001}),
            resolver, publisher
        )
        self.provisioner.handle_application_approved(approved_message(1001), Mock())
        self.provisioner.handle_application_approved(
            approved_message(1002, email="maria@example.com"), Mock())

    def test_reassign_branch(self):
        customer = self.provisioner.reassign_branch(5001, "BR002")

        assert customer.branch_code == "BR002"
        assert customer.assignment_reason == "MANUAL_REASSIGNMENT"
        assert [c.customer_id for c in self.provisioner.list_customers("BR002")] == [5001]
        assert self.provisioner.resolver.customer_count("BR001") == 1

    def test_reassign_to_inactive_branch_fails(self):
        with pytest.raises(InvalidBranch):
            self.provisioner.reassign_branch(5001, "BR003")
        assert self.provisioner.get_customer(5001).branch_code == "BR001"

    def test_reassign_unknown_customer(self):
        with pytest.raises(ResourceNotFound):
            self.provisioner.reassign_branch(9999, "BR002")

    def test_update_kyc_status(self):
        customer = self.provisioner.update_kyc_status(5001, "rejected")
        assert customer.kyc_status == KYCStatus.REJECTED

        customer = self.provisioner.update_kyc_status(5001, KYCStatus.VERIFIED)
        assert customer.kyc_verified_date is not None

    def test_update_kyc_invalid_value(self):
        with pytest.raises(InvalidEnumValue):
            self.provisioner.update_kyc_status(5001, "MAYBE")

    def test_update_contact_ignores_blank_fields(self):
        """Test only non-blank values overwrite contact details"""
        customer = self.provisioner.update_contact(5001, phone_number="+639990000000", email="  ",
                                                   street="Paseo de Roxas")

        assert customer.phone_number == "+639990000000"
        assert customer.email == "juan@example.com"
        assert self.provisioner.get_customer(5001).street == "Paseo de Roxas"

    def test_update_contact_email_clash(self):
        with pytest.raises(ValidationError):
            self.provisioner.update_contact(5001, email="maria@example.com")
        assert self.provisioner.get_customer(5001).email == "juan@example.com"

    def test_get_contact(self):
        contact = self.provisioner.get_contact(5002)
        assert contact.email == "maria@example.com"
        assert contact.full_name == "Juan Santos Dela Cruz"
        assert self.provisioner.get_contact(9999) is None
