"""
Approval Workflow Module

One-way pending -> approved / rejected state machine shared by loans and
credit-card applications. Each entity kind plugs in through an
ApprovalTarget that knows its table, its statuses and its default remarks.
There is no path back to pending; re-applying means creating a new entity.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .audit import AuditAction, AuditRecorder
from .errors import (
    ApplicationNotFoundError, InvalidStateTransitionError, PermissionDeniedError, ValidationError
)
from .events import DomainEvent, EventDispatcher, PostCommitMixin
from .logging_config import get_logger, log_action
from .principals import EmployeePrincipal, EmployeeRole, Principal
from .storage import StorageInterface, UnitOfWork


class Decision(Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ApprovalTarget(ABC):
    """
    Adapter between the workflow and one kind of reviewable entity.

    ``reject_remarks`` is the default rejection text; None means a
    rejection must carry an explicit, non-empty remark.
    """
    entity_type: str
    table: str
    approve_remarks: str
    reject_remarks: Optional[str]
    approved_event: DomainEvent
    rejected_event: DomainEvent

    @abstractmethod
    def from_dict(self, data: Dict[str, Any]) -> Any:
        pass

    @abstractmethod
    def status_of(self, entity: Any) -> str:
        """Current status value of the entity"""
        pass

    @abstractmethod
    def decide(self, entity: Any, decision: Decision, reviewer_id: str,
               remarks: str, decided_at: datetime) -> Any:
        """Return the entity after the decision; must not touch the store"""
        pass

    def not_found(self, entity_id: str) -> Exception:
        return ApplicationNotFoundError(entity_id)

    def event_data(self, entity: Any) -> Dict[str, Any]:
        return {"status": self.status_of(entity)}


class ApprovalWorkflow(PostCommitMixin):
    """
    Generic reviewer decisions over an ApprovalTarget
    """

    def __init__(
        self,
        storage: StorageInterface,
        target: ApprovalTarget,
        audit: Optional[AuditRecorder] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        reviewer_roles: FrozenSet[EmployeeRole] = frozenset({EmployeeRole.ADMIN})
    ):
        self.storage = storage
        self.target = target
        self.audit = audit
        self.event_dispatcher = event_dispatcher
        self.reviewer_roles = reviewer_roles
        self.logger = get_logger(f"bankcore.workflows.{target.entity_type}")

    def approve(self, entity_id: str, reviewer: Principal, remarks: Optional[str] = None) -> Any:
        """Approve a pending entity"""
        return self._decide(entity_id, reviewer, Decision.APPROVE, remarks)

    def reject(self, entity_id: str, reviewer: Principal, remarks: Optional[str] = None) -> Any:
        """Reject a pending entity; terminal"""
        return self._decide(entity_id, reviewer, Decision.REJECT, remarks)

    def get_pending(self) -> List[Any]:
        """Entities awaiting review, oldest first"""
        entities = [self.target.from_dict(data)
                    for data in self.storage.find(self.target.table, {"status": "pending"})]
        entities.sort(key=lambda e: e.created_at)
        return entities

    def _check_reviewer(self, reviewer: Principal) -> None:
        if not isinstance(reviewer, EmployeePrincipal):
            raise PermissionDeniedError(f"Only staff can review a {self.target.entity_type}")
        if reviewer.role not in self.reviewer_roles:
            raise PermissionDeniedError(
                f"Role {reviewer.role.value} cannot review a {self.target.entity_type}"
            )

    def _resolve_remarks(self, decision: Decision, remarks: Optional[str]) -> str:
        if remarks is not None and remarks.strip():
            return remarks.strip()
        if decision == Decision.APPROVE:
            return self.target.approve_remarks
        if self.target.reject_remarks is None:
            raise ValidationError(f"Rejecting a {self.target.entity_type} requires remarks")
        return self.target.reject_remarks

    def _decide(self, entity_id: str, reviewer: Principal, decision: Decision,
                remarks: Optional[str]) -> Any:
        self._check_reviewer(reviewer)
        remarks = self._resolve_remarks(decision, remarks)
        target = self.target

        def work(uow: UnitOfWork):
            uow.lock(target.table, [entity_id])
            data = uow.load(target.table, entity_id)
            if not data:
                raise target.not_found(entity_id)
            entity = target.from_dict(data)
            current = target.status_of(entity)
            if current != "pending":
                raise InvalidStateTransitionError(target.entity_type, entity_id, current, decision.value)

            decided = target.decide(entity, decision, reviewer.id, remarks, datetime.now(timezone.utc))
            uow.save(target.table, entity_id, decided.to_dict())
            return entity, decided

        before, entity = self.storage.run_atomic(work)

        outcome = "approved" if decision == Decision.APPROVE else "rejected"
        log_action(self.logger, "info", f"{target.entity_type} {entity_id} {outcome}",
                   user_id=reviewer.id, action=decision.value,
                   resource=f"{target.entity_type}:{entity_id}", extra={"remarks": remarks})
        self._record_audit(target.entity_type, entity_id,
                           AuditAction.APPROVED if decision == Decision.APPROVE else AuditAction.REJECTED,
                           actor_id=reviewer.id,
                           before={"status": target.status_of(before)},
                           after={"status": target.status_of(entity), "remarks": remarks})
        self._publish_event(
            target.approved_event if decision == Decision.APPROVE else target.rejected_event,
            target.entity_type, entity_id, target.event_data(entity)
        )
        return entity
