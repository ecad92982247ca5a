"""
Tests for the Branch Resolver and branch directory clients
"""

import httpx
import pytest
from types import SimpleNamespace
from unittest.mock import Mock, patch

from account_chain.branches import (
    AssignmentReason, BranchResolver, BranchStatus, HttpBranchDirectory, InMemoryBranchDirectory
)
from account_chain.bus import InMemoryEventBus
from account_chain.events import Topics
from account_chain.exceptions import DownstreamUnavailable, InvalidBranch
from account_chain.publishing import DirectPublisher
from account_chain.storage import InMemoryStorage


CANDIDATES = ["BR001", "BR002", "BR003", "BR004", "BR005"]


def customer(customer_id=5001, application_id=1001):
    return SimpleNamespace(customer_id=customer_id, application_id=application_id)


class TestAssign:
    """Automatic assignment"""

    def setup_method(self):
        self.directory = InMemoryBranchDirectory({code: BranchStatus.ACTIVE for code in CANDIDATES})
        self.bus = InMemoryEventBus()
        self.resolver = BranchResolver(self.directory, CANDIDATES, DirectPublisher(self.bus))

    def test_first_active_candidate(self):
        """Test the first ACTIVE candidate wins"""
        assignment = self.resolver.assign(customer())
        assert assignment.branch_code == "BR001"
        assert assignment.reason == AssignmentReason.AUTO_ASSIGNMENT

    def test_skips_inactive_candidates(self):
        """Test non-ACTIVE and unknown candidates are skipped in order"""
        self.directory.set_status("BR001", BranchStatus.UNDER_MAINTENANCE)
        self.directory.set_status("BR002", BranchStatus.CLOSED)
        del self.directory.statuses["BR003"]

        assignment = self.resolver.assign(customer())
        assert assignment.branch_code == "BR004"
        assert assignment.reason == AssignmentReason.AUTO_ASSIGNMENT

    def test_fallback_when_none_active(self):
        """Test the first candidate is used when nothing is ACTIVE"""
        for code in CANDIDATES:
            self.directory.set_status(code, BranchStatus.INACTIVE)

        assignment = self.resolver.assign(customer())
        assert assignment.branch_code == "BR001"
        assert assignment.reason == AssignmentReason.FALLBACK_ASSIGNMENT

    def test_directory_outage_falls_back(self):
        """Test an unreachable directory never fails assignment"""
        self.directory.available = False

        assignment = self.resolver.assign(customer())
        assert assignment.branch_code == "BR001"
        assert assignment.reason == AssignmentReason.FALLBACK_ASSIGNMENT

    def test_assignment_event_published(self):
        """Test every assignment emits a branch assignment event"""
        self.resolver.assign(customer())

        messages = self.bus.get_messages(Topics.BRANCH_ASSIGNMENT.value)
        assert len(messages) == 1
        assert messages[0].key == "5001"
        assert messages[0].payload["branchCode"] == "BR001"
        assert messages[0].payload["assignmentReason"] == "AUTO_ASSIGNMENT"
        assert messages[0].payload["applicationId"] == 1001

    def test_requires_candidates(self):
        with pytest.raises(ValueError):
            BranchResolver(self.directory, [], DirectPublisher(self.bus))


class TestReassign:
    """Manual reassignment"""

    def setup_method(self):
        self.directory = InMemoryBranchDirectory({
            "BR001": BranchStatus.ACTIVE,
            "BR002": BranchStatus.ACTIVE,
            "BR003": BranchStatus.CLOSED,
        })
        self.bus = InMemoryEventBus()
        self.resolver = BranchResolver(self.directory, CANDIDATES, DirectPublisher(self.bus))

    def test_reassign_to_active_branch(self):
        assignment = self.resolver.reassign(customer(), "BR002")
        assert assignment.branch_code == "BR002"
        assert assignment.reason == AssignmentReason.MANUAL_REASSIGNMENT

        payloads = self.bus.get_payloads(Topics.BRANCH_ASSIGNMENT.value)
        assert payloads[-1]["assignmentReason"] == "MANUAL_REASSIGNMENT"

    @pytest.mark.parametrize("code", ["", "B001", "BR01", "br001", "BR0000001", "XX123"])
    def test_bad_format(self, code):
        with pytest.raises(InvalidBranch):
            self.resolver.reassign(customer(), code)

    def test_unknown_branch(self):
        with pytest.raises(InvalidBranch):
            self.resolver.reassign(customer(), "BR999")

    def test_inactive_branch(self):
        with pytest.raises(InvalidBranch):
            self.resolver.reassign(customer(), "BR003")
        assert self.bus.get_messages() == []

    def test_directory_outage_propagates(self):
        """Test reassignment does not silently fall back"""
        self.directory.available = False
        with pytest.raises(DownstreamUnavailable):
            self.resolver.reassign(customer(), "BR002")


class TestCustomerCount:

    def test_counts_from_storage(self):
        storage = InMemoryStorage()
        storage.save("customers", "5001", {"branch_code": "BR001"})
        storage.save("customers", "5002", {"branch_code": "BR001"})
        storage.save("customers", "5003", {"branch_code": "BR002"})
        resolver = BranchResolver(InMemoryBranchDirectory(), CANDIDATES, Mock(), storage=storage)

        assert resolver.customer_count("BR001") == 2
        assert resolver.customer_count("BR005") == 0

    def test_no_storage(self):
        resolver = BranchResolver(InMemoryBranchDirectory(), CANDIDATES, Mock())
        assert resolver.customer_count("BR001") == 0


class TestHttpBranchDirectory:
    """REST client against a mocked httpx client"""

    def setup_method(self):
        self.directory = HttpBranchDirectory("http://branches.local/", timeout=1.0, api_key="secret")

    def teardown_method(self):
        self.directory.close()

    @patch('httpx.Client.get')
    def test_active_branch(self, mock_get):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"branchCode": "BR001", "status": "ACTIVE"}
        mock_get.return_value = mock_response

        assert self.directory.get_status("BR001") == BranchStatus.ACTIVE

        url = mock_get.call_args[0][0]
        assert url == "http://branches.local/api/branches/BR001"
        assert mock_get.call_args[1]["headers"]["Authorization"] == "Bearer secret"

    @patch('httpx.Client.get')
    def test_branch_status_field(self, mock_get):
        """Test the alternative branchStatus field is accepted"""
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"branchStatus": "under_maintenance"}
        mock_get.return_value = mock_response

        assert self.directory.get_status("BR002") == BranchStatus.UNDER_MAINTENANCE

    @patch('httpx.Client.get')
    def test_not_found(self, mock_get):
        mock_get.return_value = Mock(status_code=404)
        assert self.directory.get_status("BR999") is None

    @patch('httpx.Client.get')
    def test_server_error(self, mock_get):
        mock_get.return_value = Mock(status_code=500, text="Internal Server Error")
        with pytest.raises(DownstreamUnavailable):
            self.directory.get_status("BR001")

    @patch('httpx.Client.get')
    def test_connection_error(self, mock_get):
        mock_get.side_effect = httpx.ConnectError("Connection failed")
        with pytest.raises(DownstreamUnavailable):
            self.directory.get_status("BR001")

    @patch('httpx.Client.get')
    def test_unknown_status(self, mock_get):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"status": "DEMOLISHED"}
        mock_get.return_value = mock_response

        with pytest.raises(DownstreamUnavailable):
            self.directory.get_status("BR001")

    @patch('httpx.Client.get')
    def test_non_json_body(self, mock_get):
        """Test an HTML maintenance page on a 200 is treated as an outage"""
        mock_get.return_value = httpx.Response(200, text="<html>down for maintenance</html>")
        with pytest.raises(DownstreamUnavailable):
            self.directory.get_status("BR001")

    @patch('httpx.Client.get')
    def test_json_list_body(self, mock_get):
        mock_get.return_value = httpx.Response(200, json=["BR001", "ACTIVE"])
        with pytest.raises(DownstreamUnavailable):
            self.directory.get_status("BR001")

    @patch('httpx.Client.get')
    def test_malformed_body_falls_back_in_resolver(self, mock_get):
        """Test assignment still succeeds when every lookup returns garbage"""
        mock_get.return_value = httpx.Response(200, text="not json")
        resolver = BranchResolver(self.directory, CANDIDATES, DirectPublisher(InMemoryEventBus()))

        assignment = resolver.assign(customer())

        assert assignment.branch_code == "BR001"
        assert assignment.reason == AssignmentReason.FALLBACK_ASSIGNMENT
