"""
Test suite for accounts module

Tests account opening, primary-account lookup and lifecycle transitions.
"""

import re
from decimal import Decimal

import pytest

from bankcore.accounts import (
    Account, AccountManager, AccountStatus, AccountType, generate_account_number, new_account
)
from bankcore.audit import AuditTrail
from bankcore.currency import Currency, Money
from bankcore.errors import (
    AccountNotEmptyError, CurrencyMismatchError, InvalidStateTransitionError, PermissionDeniedError
)
from bankcore.events import DomainEvent, EventDispatcher
from bankcore.ledger import AccountLedger
from bankcore.principals import CustomerPrincipal, EmployeePrincipal, EmployeeRole
from bankcore.storage import InMemoryStorage


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


class TestAccount:

    def test_new_account_is_empty_and_active(self):
        """Test a freshly built account starts active with a zero balance"""
        account = new_account("cust-1", AccountType.SAVINGS, Currency.USD, "ACC1")

        assert account.balance == usd("0")
        assert account.status == AccountStatus.ACTIVE
        assert account.version == 0
        assert account.is_active

    def test_balance_currency_must_match(self):
        """Test an account rejects a balance in another currency"""
        account = new_account("cust-1", AccountType.SAVINGS, Currency.USD, "ACC1")
        data = account.to_dict()
        data['balance'] = {'amount': '0.00', 'currency': 'EUR'}

        with pytest.raises(ValueError, match="Balance currency must match account currency"):
            Account.from_dict(data)

    def test_account_number_format(self):
        """Test generated account numbers follow the ACC format"""
        assert re.match(r'^ACC\d{13,}\d{3}$', generate_account_number())


class TestAccountManager:
    """Test AccountManager functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.events = EventDispatcher()
        self.ledger = AccountLedger(self.storage, audit=self.audit)
        self.manager = AccountManager(self.storage, self.ledger, audit=self.audit,
                                      event_dispatcher=self.events)
        self.owner = CustomerPrincipal("cust-1")
        self.admin = EmployeePrincipal("emp-1", EmployeeRole.ADMIN)

    def test_open_account_with_initial_deposit(self):
        """Test the initial deposit is posted through the ledger"""
        account = self.manager.open_account(self.owner, AccountType.SAVINGS,
                                            initial_deposit=usd("250.00"))

        assert account.balance == usd("250.00")
        assert account.version == 1
        assert account.account_number.startswith("ACC")

        entries = self.ledger.get_entries(account.id)
        assert len(entries) == 1
        assert entries[0].description == "Initial deposit"
        assert entries[0].balance_after == usd("250.00")
        assert self.ledger.verify_account(account.id)

    def test_open_account_without_deposit(self):
        """Test opening an account with no initial deposit"""
        account = self.manager.open_account(self.owner, AccountType.CHECKING, Currency.EUR)

        assert account.balance == Money.zero(Currency.EUR)
        assert self.ledger.get_entries(account.id) == []
        assert self.manager.get_account(account.id) == account

    def test_open_account_rejects_mismatched_deposit(self):
        """Test an initial deposit in the wrong currency is refused"""
        with pytest.raises(CurrencyMismatchError):
            self.manager.open_account(self.owner, AccountType.SAVINGS, Currency.USD,
                                      initial_deposit=Money(Decimal('5'), Currency.EUR))
        assert self.manager.get_customer_accounts(self.owner.id) == []

    def test_open_account_publishes_and_audits(self):
        """Test opening an account publishes an event and writes an audit record"""
        received = []
        self.events.subscribe(DomainEvent.ACCOUNT_OPENED, received.append)

        account = self.manager.open_account(self.owner, AccountType.SAVINGS)

        assert len(received) == 1
        assert received[0].entity_id == account.id
        assert received[0].data["account_number"] == account.account_number
        assert len(self.audit.get_events_for_entity("account", account.id)) == 1

    def test_lookup_by_number_and_customer(self):
        """Test account lookups by number and by customer"""
        first = self.manager.open_account(self.owner, AccountType.SAVINGS)
        second = self.manager.open_account(self.owner, AccountType.CHECKING)

        assert self.manager.get_account_by_number(second.account_number).id == second.id
        assert [a.id for a in self.manager.get_customer_accounts(self.owner.id)] == [first.id, second.id]
        assert self.manager.get_account("missing") is None

    def test_primary_account_is_oldest_active_savings(self):
        """Test the primary account is the oldest active savings account"""
        self.manager.open_account(self.owner, AccountType.CHECKING)
        oldest = self.manager.open_account(self.owner, AccountType.SAVINGS)
        newer = self.manager.open_account(self.owner, AccountType.SAVINGS)

        assert self.manager.find_primary_account(self.owner.id).id == oldest.id

        self.manager.freeze_account(oldest.id, self.admin)
        assert self.manager.find_primary_account(self.owner.id).id == newer.id

        self.manager.freeze_account(newer.id, self.admin)
        assert self.manager.find_primary_account(self.owner.id) is None

    def test_freeze_and_unfreeze(self):
        """Test freezing and unfreezing an account"""
        account = self.manager.open_account(self.owner, AccountType.SAVINGS)

        frozen = self.manager.freeze_account(account.id, self.admin, reason="Suspicious activity")
        assert frozen.status == AccountStatus.FROZEN

        active = self.manager.unfreeze_account(account.id, self.admin)
        assert active.status == AccountStatus.ACTIVE

        events = self.audit.get_events_for_entity("account", account.id)
        assert [e.action.value for e in events] == [
            "account_opened", "account_status_changed", "account_status_changed"
        ]

    def test_same_status_is_noop(self):
        """Test setting the current status again changes nothing"""
        account = self.manager.open_account(self.owner, AccountType.SAVINGS)

        assert self.manager.unfreeze_account(account.id, self.admin).status == AccountStatus.ACTIVE
        assert len(self.audit.get_events_for_entity("account", account.id)) == 1

    def test_close_requires_zero_balance(self):
        """Test an account with money in it cannot be closed"""
        account = self.manager.open_account(self.owner, AccountType.SAVINGS, initial_deposit=usd("10"))

        with pytest.raises(AccountNotEmptyError, match="non-zero balance"):
            self.manager.close_account(account.id, self.admin)

        self.ledger.debit(account.id, usd("10"))
        closed = self.manager.close_account(account.id, self.admin)
        assert closed.status == AccountStatus.CLOSED

    def test_closed_is_terminal(self):
        """Test a closed account cannot be reopened"""
        account = self.manager.open_account(self.owner, AccountType.SAVINGS)
        self.manager.close_account(account.id, self.admin)

        with pytest.raises(InvalidStateTransitionError, match="from closed to active"):
            self.manager.unfreeze_account(account.id, self.admin)

    def test_status_change_requires_staff(self):
        """Test customers cannot change account status"""
        account = self.manager.open_account(self.owner, AccountType.SAVINGS)

        with pytest.raises(PermissionDeniedError):
            self.manager.freeze_account(account.id, self.owner)
        assert self.manager.get_account(account.id).status == AccountStatus.ACTIVE
