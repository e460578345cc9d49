"""
Loan Engine Module

EMI computation, installment schedule generation and payment application.

Loans are tracked as payables: approval does not credit any account, and a
payment reduces ``outstanding_balance`` by the full amount paid without
splitting it into interest and principal. Installments all carry the same
rounded EMI; the last one is not adjusted for rounding drift.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import calendar
import uuid

from .audit import AuditAction, AuditRecorder
from .config import BankCoreConfig
from .currency import Money
from .errors import (
    CurrencyMismatchError, DomainError, InvalidLoanTermsError, LoanNotActiveError,
    LoanNotFoundError, NoPendingInstallmentsError
)
from .events import DomainEvent, EventDispatcher, PostCommitMixin
from .ledger import validate_amount
from .logging_config import get_logger, log_action
from .principals import CustomerPrincipal
from .storage import StorageInterface, StorageRecord, UnitOfWork, parse_date, parse_datetime
from .workflows import ApprovalTarget, Decision


LOANS_TABLE = "loans"
INSTALLMENTS_TABLE = "loan_installments"


class LoanType(Enum):
    PERSONAL = "personal"
    HOME = "home"
    AUTO = "auto"
    BUSINESS = "business"
    EDUCATION = "education"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Applied, awaiting review
    ACTIVE = "active"          # Approved, accepting payments
    REJECTED = "rejected"      # Terminal
    CLOSED = "closed"          # Paid off, terminal
    DEFAULTED = "defaulted"    # Set outside the core


class InstallmentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    PARTIAL = "partial"


PAYABLE_STATUSES = (InstallmentStatus.PENDING.value, InstallmentStatus.OVERDUE.value)


@dataclass(frozen=True)
class Loan(StorageRecord):
    """A loan application and, once approved, the running payable"""
    customer_id: str
    loan_type: LoanType
    principal: Money
    annual_interest_rate: Decimal      # Percent, e.g. 8.5
    tenure_months: int
    monthly_emi: Money
    outstanding_balance: Money         # May go below zero on overpayment
    status: LoanStatus = LoanStatus.PENDING
    applied_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    remarks: Optional[str] = None
    closed_at: Optional[datetime] = None
    next_due_date: Optional[date] = None

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            loan_type=LoanType(data['loan_type']),
            principal=Money.from_dict(data['principal']),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            tenure_months=data['tenure_months'],
            monthly_emi=Money.from_dict(data['monthly_emi']),
            outstanding_balance=Money.from_dict(data['outstanding_balance']),
            status=LoanStatus(data['status']),
            applied_at=parse_datetime(data.get('applied_at')),
            reviewed_by=data.get('reviewed_by'),
            reviewed_at=parse_datetime(data.get('reviewed_at')),
            remarks=data.get('remarks'),
            closed_at=parse_datetime(data.get('closed_at')),
            next_due_date=parse_date(data.get('next_due_date'))
        )


@dataclass(frozen=True)
class LoanInstallment(StorageRecord):
    """One scheduled monthly repayment"""
    loan_id: str
    installment_number: int
    due_date: date
    amount: Money
    paid_amount: Money
    penalty: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    days_overdue: int = 0

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanInstallment':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=parse_date(data['due_date']),
            amount=Money.from_dict(data['amount']),
            paid_amount=Money.from_dict(data['paid_amount']),
            penalty=Money.from_dict(data['penalty']),
            status=InstallmentStatus(data['status']),
            paid_date=parse_date(data.get('paid_date')),
            days_overdue=data.get('days_overdue', 0)
        )


@dataclass(frozen=True)
class LoanPaymentResult:
    """Loan and installment as they stand after a payment"""
    loan: Loan
    installment: LoanInstallment
    amount: Money

    @property
    def loan_closed(self) -> bool:
        return self.loan.status == LoanStatus.CLOSED


def calculate_emi(principal: Money, annual_rate: Decimal, tenure_months: int) -> Money:
    """
    Reducing-balance EMI: P * r * (1+r)^n / ((1+r)^n - 1) with monthly rate
    r = annual_rate / 12 / 100. A zero rate gives P / n. Rounded half-up to
    the currency precision.
    """
    monthly_rate = Decimal(str(annual_rate)) / Decimal('12') / Decimal('100')
    amount = principal.amount

    if monthly_rate == Decimal('0'):
        emi = amount / Decimal(tenure_months)
    else:
        factor = (Decimal('1') + monthly_rate) ** tenure_months
        emi = amount * monthly_rate * factor / (factor - Decimal('1'))

    return Money(emi, principal.currency)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def build_installment_schedule(loan: Loan, applied_on: date) -> List[LoanInstallment]:
    """
    One installment per month of tenure, each for the EMI, due on the first
    of consecutive months starting the month after ``applied_on``.
    """
    now = datetime.now(timezone.utc)
    first_of_month = applied_on.replace(day=1)
    zero = Money.zero(loan.principal.currency)
    return [
        LoanInstallment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            installment_number=number,
            due_date=add_months(first_of_month, number),
            amount=loan.monthly_emi,
            paid_amount=zero,
            penalty=zero
        )
        for number in range(1, loan.tenure_months + 1)
    ]


def new_loan(customer_id: str, loan_type: LoanType, principal: Money,
             annual_rate: Decimal, tenure_months: int) -> Loan:
    now = datetime.now(timezone.utc)
    return Loan(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        customer_id=customer_id,
        loan_type=loan_type,
        principal=principal,
        annual_interest_rate=annual_rate,
        tenure_months=tenure_months,
        monthly_emi=calculate_emi(principal, annual_rate, tenure_months),
        outstanding_balance=principal,
        applied_at=now,
        next_due_date=add_months(now.date().replace(day=1), 1)
    )


class LoanEngine(PostCommitMixin):
    """
    Manages loans from application through payoff
    """

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
        self.logger = get_logger("bankcore.loans")

    def calculate_emi(self, principal: Money, annual_rate: Decimal, tenure_months: int) -> Money:
        return calculate_emi(principal, annual_rate, tenure_months)

    def _validate_terms(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> None:
        if not isinstance(principal, Money):
            raise InvalidLoanTermsError("Principal must be Money")
        min_principal = Decimal(self.config.loan_min_principal)
        max_principal = Decimal(self.config.loan_max_principal)
        if not min_principal <= principal.amount <= max_principal:
            raise InvalidLoanTermsError(
                f"Principal must be between {min_principal} and {max_principal}, got {principal.amount}"
            )
        if isinstance(tenure_months, bool) or not isinstance(tenure_months, int):
            raise InvalidLoanTermsError("Tenure must be a whole number of months")
        if not self.config.loan_min_tenure_months <= tenure_months <= self.config.loan_max_tenure_months:
            raise InvalidLoanTermsError(
                f"Tenure must be between {self.config.loan_min_tenure_months} and "
                f"{self.config.loan_max_tenure_months} months, got {tenure_months}"
            )
        if annual_rate < Decimal('0'):
            raise InvalidLoanTermsError(f"Interest rate cannot be negative, got {annual_rate}")

    def apply_for_loan(
        self,
        owner: CustomerPrincipal,
        loan_type: LoanType,
        principal: Money,
        tenure_months: int,
        annual_rate: Optional[Decimal] = None
    ) -> Loan:
        """
        Apply for a loan

        Args:
            owner: Borrowing customer
            loan_type: personal, home, auto, business or education
            principal: Amount borrowed
            tenure_months: Number of monthly installments
            annual_rate: Annual interest rate in percent (configured default if omitted)

        Returns:
            The pending Loan; its schedule is stored alongside it
        """
        rate = Decimal(str(annual_rate)) if annual_rate is not None \
            else Decimal(self.config.default_loan_interest_rate)
        self._validate_terms(principal, tenure_months, rate)

        loan = new_loan(owner.id, loan_type, principal, rate, tenure_months)
        schedule = build_installment_schedule(loan, loan.applied_at.date())

        def work(uow: UnitOfWork) -> Loan:
            uow.insert(LOANS_TABLE, loan.id, loan.to_dict())
            for installment in schedule:
                uow.insert(INSTALLMENTS_TABLE, installment.id, installment.to_dict())
            return loan

        self.storage.run_atomic(work)

        log_action(self.logger, "info", f"Loan application {loan.id} submitted",
                   user_id=owner.id, action="apply_for_loan", resource=f"loan:{loan.id}",
                   extra={"principal": str(principal.amount), "rate": str(rate),
                          "tenure_months": tenure_months, "emi": str(loan.monthly_emi.amount)})
        self._record_audit("loan", loan.id, AuditAction.LOAN_APPLIED, actor_id=owner.id, after=loan.to_dict())
        self._publish_event(DomainEvent.LOAN_APPLIED, "loan", loan.id, {
            "customer_id": owner.id,
            "loan_type": loan_type.value,
            "principal": str(principal.amount),
            "currency": principal.currency.code,
            "monthly_emi": str(loan.monthly_emi.amount)
        })
        return loan

    def apply_payment(self, loan_id: str, amount: Money, owner: CustomerPrincipal) -> LoanPaymentResult:
        """
        Pay against the earliest pending or overdue installment

        The installment becomes paid when the amount covers it, partial
        otherwise. The full amount comes off the outstanding balance; at or
        below zero the loan closes.
        """
        validate_amount(amount)

        def work(uow: UnitOfWork) -> LoanPaymentResult:
            uow.lock(LOANS_TABLE, [loan_id])
            data = uow.load(LOANS_TABLE, loan_id)
            if not data or data['customer_id'] != owner.id:
                raise LoanNotFoundError(loan_id)
            loan = Loan.from_dict(data)
            if not loan.is_active:
                raise LoanNotActiveError(loan_id, loan.status.value)
            if amount.currency != loan.principal.currency:
                raise CurrencyMismatchError(
                    f"Payment in {amount.currency.code}, loan in {loan.principal.currency.code}"
                )

            payable = self._payable_installments(uow, loan_id)
            if not payable:
                raise NoPendingInstallmentsError(loan_id)

            now = datetime.now(timezone.utc)
            installment = replace(
                payable[0],
                paid_amount=amount,
                paid_date=now.date(),
                status=InstallmentStatus.PAID if amount >= payable[0].amount else InstallmentStatus.PARTIAL,
                updated_at=now
            )

            outstanding = loan.outstanding_balance - amount
            closed = not outstanding.is_positive()
            loan = replace(
                loan,
                outstanding_balance=outstanding,
                status=LoanStatus.CLOSED if closed else loan.status,
                closed_at=now if closed else None,
                next_due_date=None if closed or len(payable) == 1 else payable[1].due_date,
                updated_at=now
            )

            uow.save(INSTALLMENTS_TABLE, installment.id, installment.to_dict())
            uow.save(LOANS_TABLE, loan.id, loan.to_dict())
            return LoanPaymentResult(loan, installment, amount)

        try:
            result = self.storage.run_atomic(work)
        except DomainError as e:
            log_action(self.logger, "warning", f"Loan payment rejected: {e}",
                       user_id=owner.id, action="loan_payment", resource=f"loan:{loan_id}")
            raise

        loan = result.loan
        log_action(self.logger, "info", f"Payment of {amount.to_string()} applied to loan {loan_id}",
                   user_id=owner.id, action="loan_payment", resource=f"loan:{loan_id}",
                   extra={"installment": result.installment.installment_number,
                          "installment_status": result.installment.status.value,
                          "outstanding": str(loan.outstanding_balance.amount)})
        self._record_audit("loan", loan_id, AuditAction.LOAN_PAYMENT, actor_id=owner.id,
                           after={"installment_id": result.installment.id,
                                  "paid_amount": amount.to_dict(),
                                  "outstanding_balance": loan.outstanding_balance.to_dict()})
        self._publish_event(DomainEvent.LOAN_PAYMENT, "loan", loan_id, {
            "customer_id": owner.id,
            "amount": str(amount.amount),
            "currency": amount.currency.code,
            "outstanding_balance": str(loan.outstanding_balance.amount)
        })
        if result.loan_closed:
            self.logger.info(f"Loan {loan_id} paid off and closed")
            self._record_audit("loan", loan_id, AuditAction.LOAN_CLOSED, actor_id=owner.id,
                               after={"status": loan.status.value})
            self._publish_event(DomainEvent.LOAN_CLOSED, "loan", loan_id, {"customer_id": owner.id})
        return result

    def _payable_installments(self, source, loan_id: str) -> List[LoanInstallment]:
        installments = [
            LoanInstallment.from_dict(data)
            for data in source.find(INSTALLMENTS_TABLE, {"loan_id": loan_id})
            if data['status'] in PAYABLE_STATUSES
        ]
        installments.sort(key=lambda i: (i.due_date, i.installment_number))
        return installments

    def mark_overdue_installments(self, as_of: date) -> int:
        """
        Flag pending installments of active loans that fell due before
        ``as_of`` as overdue and refresh days_overdue on those already
        overdue. Paid and partial installments are left alone.

        Returns:
            Number of installments updated
        """
        updated_count = 0
        for loan_data in self.storage.find(LOANS_TABLE, {"status": LoanStatus.ACTIVE.value}):
            loan_id = loan_data['id']

            def work(uow: UnitOfWork) -> int:
                uow.lock(LOANS_TABLE, [loan_id])
                now = datetime.now(timezone.utc)
                changed = 0
                for installment in self._payable_installments(uow, loan_id):
                    if installment.due_date >= as_of:
                        continue
                    days = (as_of - installment.due_date).days
                    if installment.status == InstallmentStatus.OVERDUE and installment.days_overdue == days:
                        continue
                    overdue = replace(installment, status=InstallmentStatus.OVERDUE,
                                      days_overdue=days, updated_at=now)
                    uow.save(INSTALLMENTS_TABLE, overdue.id, overdue.to_dict())
                    changed += 1
                return changed

            changed = self.storage.run_atomic(work)
            if changed:
                updated_count += changed
                self._record_audit("loan", loan_id, AuditAction.INSTALLMENTS_OVERDUE,
                                   after={"as_of": as_of.isoformat(), "installments": changed})

        if updated_count:
            self.logger.info(f"Marked {updated_count} installments overdue as of {as_of.isoformat()}")
        return updated_count

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(LOANS_TABLE, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return Loan.from_dict(data)

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        """All loans of a customer, most recent application first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(LOANS_TABLE, {"customer_id": customer_id})]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_schedule(self, loan_id: str) -> List[LoanInstallment]:
        """Installments in due-date order"""
        installments = [LoanInstallment.from_dict(data)
                        for data in self.storage.find(INSTALLMENTS_TABLE, {"loan_id": loan_id})]
        installments.sort(key=lambda i: (i.due_date, i.installment_number))
        return installments

    def get_pending_loans(self) -> List[Loan]:
        loans = [Loan.from_dict(data)
                 for data in self.storage.find(LOANS_TABLE, {"status": LoanStatus.PENDING.value})]
        loans.sort(key=lambda loan: loan.created_at)
        return loans


class LoanApprovalTarget(ApprovalTarget):
    """Approval puts a pending loan into repayment; rejection needs remarks"""
    entity_type = "loan"
    table = LOANS_TABLE
    approve_remarks = "Approved by admin"
    reject_remarks = None
    approved_event = DomainEvent.LOAN_APPROVED
    rejected_event = DomainEvent.LOAN_REJECTED

    def from_dict(self, data: Dict) -> Loan:
        return Loan.from_dict(data)

    def status_of(self, entity: Loan) -> str:
        return entity.status.value

    def not_found(self, entity_id: str) -> Exception:
        return LoanNotFoundError(entity_id)

    def decide(self, entity: Loan, decision: Decision, reviewer_id: str,
               remarks: str, decided_at: datetime) -> Loan:
        return replace(
            entity,
            status=LoanStatus.ACTIVE if decision == Decision.APPROVE else LoanStatus.REJECTED,
            reviewed_by=reviewer_id,
            reviewed_at=decided_at,
            remarks=remarks,
            updated_at=decided_at
        )

    def event_data(self, entity: Loan) -> Dict:
        return {
            "customer_id": entity.customer_id,
            "status": entity.status.value,
            "principal": str(entity.principal.amount),
            "remarks": entity.remarks
        }
