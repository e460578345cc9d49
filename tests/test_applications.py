"""
Tests for credit card applications
"""

from decimal import Decimal

import pytest

from bankcore.applications import (
    ApplicationApprovalTarget, ApplicationStatus, CardType, CreditCardApplicationManager,
    EmploymentStatus, calculate_credit_limit
)
from bankcore.config import BankCoreConfig
from bankcore.currency import Currency, Money
from bankcore.errors import (
    ApplicationNotFoundError, DuplicateApplicationError, InvalidAmountError,
    InvalidStateTransitionError, ValidationError
)
from bankcore.principals import CustomerPrincipal, EmployeePrincipal, EmployeeRole
from bankcore.storage import InMemoryStorage
from bankcore.workflows import ApprovalWorkflow


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


class TestCreditLimit:

    def test_employed(self):
        """Test the employed income factor"""
        assert calculate_credit_limit(usd("60000"), EmploymentStatus.EMPLOYED) == usd("18000")

    def test_self_employed_and_student_factors(self):
        """Test the self-employed and student income factors"""
        assert calculate_credit_limit(usd("60000"), EmploymentStatus.SELF_EMPLOYED) == usd("14400")
        assert calculate_credit_limit(usd("20000"), EmploymentStatus.STUDENT) == usd("3000")

    def test_capped(self):
        """Test the credit limit never exceeds the cap"""
        assert calculate_credit_limit(usd("1000000"), EmploymentStatus.RETIRED) == usd("50000")


class TestCreditCardApplicationManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.manager = CreditCardApplicationManager(self.storage)
        self.owner = CustomerPrincipal("cust-1")

    def _apply(self, card_type=CardType.PLATINUM, owner=None):
        return self.manager.apply(owner or self.owner, card_type, "Alice Smith",
                                  usd("80000"), EmploymentStatus.EMPLOYED)

    def test_apply(self):
        """Test applying for a credit card"""
        application = self._apply()

        assert application.status == ApplicationStatus.PENDING
        assert application.credit_limit == usd("24000")
        assert self.manager.get_application(application.id) == application

    def test_configured_limits(self):
        """Test limits follow the configured ratio and cap"""
        manager = CreditCardApplicationManager(
            self.storage, BankCoreConfig(credit_limit_income_ratio="0.5", credit_limit_cap="30000")
        )
        application = manager.apply(self.owner, CardType.GOLD, "Alice", usd("80000"), EmploymentStatus.EMPLOYED)

        assert application.credit_limit == usd("30000")

    def test_validation(self):
        """Test application input validation"""
        with pytest.raises(ValidationError, match="Card name is required"):
            self.manager.apply(self.owner, CardType.GOLD, "  ", usd("1000"), EmploymentStatus.EMPLOYED)
        with pytest.raises(InvalidAmountError):
            self.manager.apply(self.owner, CardType.GOLD, "Alice", usd("0"), EmploymentStatus.EMPLOYED)

    def test_one_pending_application_per_card_type(self):
        """Test only one pending application per card type and customer"""
        self._apply(CardType.GOLD)

        with pytest.raises(DuplicateApplicationError, match="pending application for gold card"):
            self._apply(CardType.GOLD)

        # Other card types and other customers are unaffected
        self._apply(CardType.CLASSIC)
        self._apply(CardType.GOLD, owner=CustomerPrincipal("cust-2"))

    def test_can_reapply_after_decision(self):
        """Test a new application is allowed once the previous one is decided"""
        first = self._apply(CardType.GOLD)
        workflow = ApprovalWorkflow(self.storage, ApplicationApprovalTarget())
        workflow.reject(first.id, EmployeePrincipal("emp-1", EmployeeRole.ADMIN))

        second = self._apply(CardType.GOLD)
        assert second.id != first.id

    def test_cancel_pending(self):
        """Test cancelling a pending application"""
        application = self._apply()

        self.manager.cancel(application.id, self.owner)

        with pytest.raises(ApplicationNotFoundError):
            self.manager.get_application(application.id)

    def test_cancel_someone_elses_application(self):
        """Test customers cannot cancel other customers' applications"""
        application = self._apply()

        with pytest.raises(ApplicationNotFoundError):
            self.manager.cancel(application.id, CustomerPrincipal("cust-2"))
        assert self.manager.get_application(application.id).status == ApplicationStatus.PENDING

    def test_cancel_reviewed_application(self):
        """Test a reviewed application cannot be cancelled"""
        application = self._apply()
        workflow = ApprovalWorkflow(self.storage, ApplicationApprovalTarget())
        workflow.approve(application.id, EmployeePrincipal("emp-1", EmployeeRole.ADMIN))

        with pytest.raises(InvalidStateTransitionError, match="from approved to cancelled"):
            self.manager.cancel(application.id, self.owner)

    def test_queries(self):
        """Test application lookups"""
        gold = self._apply(CardType.GOLD)
        classic = self._apply(CardType.CLASSIC)

        assert {a.id for a in self.manager.get_customer_applications(self.owner.id)} == {gold.id, classic.id}
        assert len(self.manager.get_applications_by_status(ApplicationStatus.PENDING)) == 2
        assert self.manager.get_applications_by_status(ApplicationStatus.APPROVED) == []
        with pytest.raises(ApplicationNotFoundError):
            self.manager.get_application(gold.id, owner=CustomerPrincipal("cust-2"))
