"""
Branch Resolver Module

Assigns customers to an operating branch.

Automatic assignment walks a configured, ordered candidate list and takes the
first branch the directory reports ACTIVE. When no candidate is confirmed
active (directory errors count as "not active") the first candidate is used.
Assignment therefore never fails. Manual reassignment is strict: the target
must be well-formed, known to the directory and ACTIVE.
"""

import httpx
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from .events import BranchAssignmentEvent, parse_enum
from .exceptions import DownstreamUnavailable, InvalidBranch, InvalidEnumValue
from .logging_config import log_action
from .publishing import EventPublisher
from .storage import StorageInterface


logger = logging.getLogger("account_chain.branches")


BRANCH_CODE_PATTERN = re.compile(r'^BR\d{3,6}$')


class BranchStatus(Enum):
    """Operating status reported by the branch directory"""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    UNDER_MAINTENANCE = "UNDER_MAINTENANCE"
    CLOSED = "CLOSED"


class AssignmentReason(Enum):
    """Why a customer ended up at a branch"""
    AUTO_ASSIGNMENT = "AUTO_ASSIGNMENT"
    FALLBACK_ASSIGNMENT = "FALLBACK_ASSIGNMENT"
    MANUAL_REASSIGNMENT = "MANUAL_REASSIGNMENT"


@dataclass
class BranchAssignment:
    """Result of an assignment or reassignment"""
    branch_code: str
    reason: AssignmentReason
    assigned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BranchDirectory(ABC):
    """Read-only view of the external branch directory"""

    @abstractmethod
    def get_status(self, branch_code: str) -> Optional[BranchStatus]:
        """
        Look up a branch.

        Returns:
            The branch status, or None if the branch does not exist

        Raises:
            DownstreamUnavailable: the directory could not be reached
        """
        pass


class HttpBranchDirectory(BranchDirectory):
    """REST client for the branch directory service"""

    def __init__(self, base_url: str, timeout: float = 2.0, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout)

    def get_status(self, branch_code: str) -> Optional[BranchStatus]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.get(f"{self.base_url}/api/branches/{branch_code}", headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Branch directory unreachable for {branch_code}: {e}")
            raise DownstreamUnavailable(f"Branch directory unreachable: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.warning(f"Branch directory returned {response.status_code}: {response.text}")
            raise DownstreamUnavailable(f"Branch directory returned {response.status_code}")

        try:
            data = response.json()
            status = data.get("status", data.get("branchStatus"))
        except (ValueError, AttributeError) as e:
            logger.warning(f"Branch directory returned a malformed body for {branch_code}: {response.text[:200]}")
            raise DownstreamUnavailable("Branch directory returned a malformed body") from e

        try:
            return parse_enum(BranchStatus, status, "status")
        except InvalidEnumValue as e:
            raise DownstreamUnavailable(f"Branch directory returned unknown status {status!r}") from e

    def close(self) -> None:
        self._client.close()


class InMemoryBranchDirectory(BranchDirectory):
    """In-memory directory for development and tests"""

    def __init__(self, statuses: Optional[Dict[str, BranchStatus]] = None):
        self.statuses: Dict[str, BranchStatus] = dict(statuses or {})
        self.available = True

    def set_status(self, branch_code: str, status: BranchStatus) -> None:
        self.statuses[branch_code] = status

    def get_status(self, branch_code: str) -> Optional[BranchStatus]:
        if not self.available:
            raise DownstreamUnavailable("Branch directory unavailable")
        return self.statuses.get(branch_code)


class BranchResolver:
    """
    Deterministic branch assignment with fallback and manual reassignment
    """

    def __init__(self, directory: BranchDirectory, candidates: List[str],
                 publisher: EventPublisher, storage: Optional[StorageInterface] = None,
                 customer_table: str = "customers"):
        if not candidates:
            raise ValueError("At least one branch candidate must be configured")
        self.directory = directory
        self.candidates = list(candidates)
        self.publisher = publisher
        self.storage = storage
        self.customer_table = customer_table

    def assign(self, customer) -> BranchAssignment:
        """
        Pick a branch for ``customer`` (anything with customer_id / application_id).

        Returns the first ACTIVE candidate (AUTO_ASSIGNMENT), otherwise the first
        candidate (FALLBACK_ASSIGNMENT).
        """
        assignment = None
        for code in self.candidates:
            try:
                status = self.directory.get_status(code)
            except DownstreamUnavailable as e:
                logger.warning(f"Could not check branch {code}, treating as not active: {e}")
                continue
            if status == BranchStatus.ACTIVE:
                assignment = BranchAssignment(code, AssignmentReason.AUTO_ASSIGNMENT)
                break

        if assignment is None:
            assignment = BranchAssignment(self.candidates[0], AssignmentReason.FALLBACK_ASSIGNMENT)
            logger.warning(
                f"No active branch among candidates, falling back to {assignment.branch_code}"
            )

        self._publish(customer, assignment)
        return assignment

    def reassign(self, customer, target_branch: str) -> BranchAssignment:
        """
        Move ``customer`` to ``target_branch``.

        Raises:
            InvalidBranch: malformed code, unknown branch or branch not ACTIVE
            DownstreamUnavailable: the directory could not be reached
        """
        if not target_branch or not BRANCH_CODE_PATTERN.match(target_branch):
            raise InvalidBranch(f"Invalid branch code format: {target_branch!r}")

        status = self.directory.get_status(target_branch)
        if status is None:
            raise InvalidBranch(f"Branch {target_branch} not found")
        if status != BranchStatus.ACTIVE:
            raise InvalidBranch(f"Branch {target_branch} is not active (status: {status.value})")

        assignment = BranchAssignment(target_branch, AssignmentReason.MANUAL_REASSIGNMENT)
        self._publish(customer, assignment)
        return assignment

    def customer_count(self, branch_code: str) -> int:
        """Customers currently assigned to ``branch_code``, counted from storage"""
        if self.storage is None:
            return 0
        return self.storage.count(self.customer_table, {"branch_code": branch_code})

    def _publish(self, customer, assignment: BranchAssignment) -> None:
        event = BranchAssignmentEvent(
            customer_id=customer.customer_id,
            application_id=getattr(customer, "application_id", None),
            branch_code=assignment.branch_code,
            assignment_reason=assignment.reason.value,
        )
        published = self.publisher.publish(event)
        log_action(
            logger, "info",
            f"Customer {customer.customer_id} assigned to {assignment.branch_code} "
            f"({assignment.reason.value})",
            action="assign_branch", resource=f"customer:{customer.customer_id}",
            event_id=event.event_id, extra={"event_published": published}
        )
