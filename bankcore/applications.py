"""
Credit Card Application Module

Customers apply for a card and may withdraw a pending application; staff
decide through the shared ApprovalWorkflow. The offered credit limit is
derived from declared income and employment status at application time.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import uuid

from .audit import AuditAction, AuditRecorder
from .config import BankCoreConfig
from .currency import Money
from .errors import (
    ApplicationNotFoundError, DuplicateApplicationError, InvalidAmountError,
    InvalidStateTransitionError, ValidationError
)
from .events import DomainEvent, EventDispatcher, PostCommitMixin
from .logging_config import get_logger, log_action
from .principals import CustomerPrincipal
from .storage import StorageInterface, StorageRecord, UnitOfWork, parse_datetime
from .workflows import ApprovalTarget, Decision


APPLICATIONS_TABLE = "credit_card_applications"


class CardType(Enum):
    CLASSIC = "classic"
    GOLD = "gold"
    PLATINUM = "platinum"
    BUSINESS = "business"


class EmploymentStatus(Enum):
    EMPLOYED = "employed"
    SELF_EMPLOYED = "self-employed"
    RETIRED = "retired"
    STUDENT = "student"


class ApplicationStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Multipliers applied to the income-based limit
EMPLOYMENT_FACTORS = {
    EmploymentStatus.EMPLOYED: Decimal('1'),
    EmploymentStatus.RETIRED: Decimal('1'),
    EmploymentStatus.SELF_EMPLOYED: Decimal('0.8'),
    EmploymentStatus.STUDENT: Decimal('0.5'),
}


@dataclass(frozen=True)
class CreditCardApplication(StorageRecord):
    customer_id: str
    card_type: CardType
    card_name: str
    annual_income: Money
    employment_status: EmploymentStatus
    credit_limit: Money
    status: ApplicationStatus = ApplicationStatus.PENDING
    applied_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    remarks: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'CreditCardApplication':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            card_type=CardType(data['card_type']),
            card_name=data['card_name'],
            annual_income=Money.from_dict(data['annual_income']),
            employment_status=EmploymentStatus(data['employment_status']),
            credit_limit=Money.from_dict(data['credit_limit']),
            status=ApplicationStatus(data['status']),
            applied_at=parse_datetime(data.get('applied_at')),
            reviewed_by=data.get('reviewed_by'),
            reviewed_at=parse_datetime(data.get('reviewed_at')),
            remarks=data.get('remarks')
        )


def calculate_credit_limit(annual_income: Money, employment_status: EmploymentStatus,
                           income_ratio: Decimal = Decimal('0.30'),
                           cap: Decimal = Decimal('50000')) -> Money:
    """30% of income, scaled down for self-employed and students, capped"""
    limit = annual_income.amount * income_ratio * EMPLOYMENT_FACTORS[employment_status]
    return Money(min(limit, cap), annual_income.currency)


def new_credit_card_application(customer_id: str, card_type: CardType, card_name: str,
                                annual_income: Money, employment_status: EmploymentStatus,
                                credit_limit: Money) -> CreditCardApplication:
    now = datetime.now(timezone.utc)
    return CreditCardApplication(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        customer_id=customer_id,
        card_type=card_type,
        card_name=card_name.strip(),
        annual_income=annual_income,
        employment_status=employment_status,
        credit_limit=credit_limit,
        applied_at=now
    )


class CreditCardApplicationManager(PostCommitMixin):
    """Customer side of credit card applications"""

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[BankCoreConfig] = None,
        audit: Optional[AuditRecorder] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.config = config or BankCoreConfig()
        self.audit = audit
        self.event_dispatcher = event_dispatcher
        self.logger = get_logger("bankcore.applications")

    def apply(
        self,
        owner: CustomerPrincipal,
        card_type: CardType,
        card_name: str,
        annual_income: Money,
        employment_status: EmploymentStatus
    ) -> CreditCardApplication:
        """Submit an application; one pending application per card type"""
        if not card_name or not card_name.strip():
            raise ValidationError("Card name is required")
        if not isinstance(annual_income, Money) or not annual_income.is_positive():
            raise InvalidAmountError("Annual income must be a positive amount")

        credit_limit = calculate_credit_limit(
            annual_income, employment_status,
            Decimal(self.config.credit_limit_income_ratio),
            Decimal(self.config.credit_limit_cap)
        )
        application = new_credit_card_application(
            owner.id, card_type, card_name, annual_income, employment_status, credit_limit
        )

        def work(uow: UnitOfWork) -> CreditCardApplication:
            uow.lock("card_application_slots", [f"{owner.id}:{card_type.value}"])
            existing = uow.find(APPLICATIONS_TABLE, {
                "customer_id": owner.id,
                "card_type": card_type.value,
                "status": ApplicationStatus.PENDING.value
            })
            if existing:
                raise DuplicateApplicationError(card_type.value)
            uow.insert(APPLICATIONS_TABLE, application.id, application.to_dict())
            return application

        self.storage.run_atomic(work)

        log_action(self.logger, "info", f"{card_type.value} card application submitted",
                   user_id=owner.id, action="apply_credit_card",
                   resource=f"card_application:{application.id}",
                   extra={"credit_limit": str(application.credit_limit.amount)})
        self._record_audit("card_application", application.id, AuditAction.APPLICATION_SUBMITTED,
                           actor_id=owner.id, after=application.to_dict())
        self._publish_event(DomainEvent.APPLICATION_SUBMITTED, "card_application", application.id, {
            "customer_id": owner.id,
            "card_type": card_type.value,
            "credit_limit": str(application.credit_limit.amount)
        })
        return application

    def cancel(self, application_id: str, owner: CustomerPrincipal) -> None:
        """Withdraw a pending application; reviewed ones cannot be cancelled"""

        def work(uow: UnitOfWork) -> CreditCardApplication:
            uow.lock(APPLICATIONS_TABLE, [application_id])
            data = uow.load(APPLICATIONS_TABLE, application_id)
            if not data or data['customer_id'] != owner.id:
                raise ApplicationNotFoundError(application_id)
            application = CreditCardApplication.from_dict(data)
            if application.status != ApplicationStatus.PENDING:
                raise InvalidStateTransitionError(
                    "card_application", application_id, application.status.value, "cancelled"
                )
            uow.delete(APPLICATIONS_TABLE, application_id)
            return application

        application = self.storage.run_atomic(work)
        self.logger.info(f"Card application {application_id} cancelled by {owner.id}")
        self._record_audit("card_application", application_id, AuditAction.APPLICATION_CANCELLED,
                           actor_id=owner.id, before=application.to_dict())

    def get_application(self, application_id: str, owner: Optional[CustomerPrincipal] = None) -> CreditCardApplication:
        data = self.storage.load(APPLICATIONS_TABLE, application_id)
        if not data or (owner is not None and data['customer_id'] != owner.id):
            raise ApplicationNotFoundError(application_id)
        return CreditCardApplication.from_dict(data)

    def get_customer_applications(self, customer_id: str) -> List[CreditCardApplication]:
        """A customer's applications, newest first"""
        applications = [CreditCardApplication.from_dict(data)
                        for data in self.storage.find(APPLICATIONS_TABLE, {"customer_id": customer_id})]
        applications.sort(key=lambda a: a.created_at, reverse=True)
        return applications

    def get_applications_by_status(self, status: ApplicationStatus) -> List[CreditCardApplication]:
        applications = [CreditCardApplication.from_dict(data)
                        for data in self.storage.find(APPLICATIONS_TABLE, {"status": status.value})]
        applications.sort(key=lambda a: a.created_at)
        return applications


class ApplicationApprovalTarget(ApprovalTarget):
    """Approval and rejection both fall back to a default remark"""
    entity_type = "card_application"
    table = APPLICATIONS_TABLE
    approve_remarks = "Approved"
    reject_remarks = "Rejected"
    approved_event = DomainEvent.APPLICATION_APPROVED
    rejected_event = DomainEvent.APPLICATION_REJECTED

    def from_dict(self, data: Dict) -> CreditCardApplication:
        return CreditCardApplication.from_dict(data)

    def status_of(self, entity: CreditCardApplication) -> str:
        return entity.status.value

    def decide(self, entity: CreditCardApplication, decision: Decision, reviewer_id: str,
               remarks: str, decided_at: datetime) -> CreditCardApplication:
        return replace(
            entity,
            status=ApplicationStatus.APPROVED if decision == Decision.APPROVE else ApplicationStatus.REJECTED,
            reviewed_by=reviewer_id,
            reviewed_at=decided_at,
            remarks=remarks,
            updated_at=decided_at
        )

    def event_data(self, entity: CreditCardApplication) -> Dict:
        return {
            "customer_id": entity.customer_id,
            "status": entity.status.value,
            "card_type": entity.card_type.value,
            "credit_limit": str(entity.credit_limit.amount),
            "remarks": entity.remarks
        }
