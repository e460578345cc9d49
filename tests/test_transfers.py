"""
Test suite for transfers

Covers the three transfer kinds, reference generation and all-or-nothing
behavior when any part of a transfer fails.
"""

import re
import threading
from decimal import Decimal

import pytest

from bankcore.accounts import AccountManager, AccountType
from bankcore.config import BankCoreConfig
from bankcore.currency import Currency, Money
from bankcore.customers import CustomerDirectory
from bankcore.errors import (
    AccountInactiveError, AccountNotFoundError, InsufficientFundsError, InvalidAmountError,
    RecipientAccountUnavailableError, RecipientNotFoundError, ReferenceGenerationError,
    SelfTransferNotAllowedError, StoreFailureError, TransferNotFoundError, ValidationError
)
from bankcore.events import DomainEvent, EventDispatcher
from bankcore.ledger import ENTRIES_TABLE, AccountLedger, EntryKind
from bankcore.principals import CustomerPrincipal, EmployeePrincipal, EmployeeRole
from bankcore.storage import InMemoryStorage
from bankcore.transfers import (
    REFERENCES_TABLE, TRANSFERS_TABLE, TransferOrchestrator, TransferType,
    generate_reference_number
)


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


class FlakyCommitStorage(InMemoryStorage):
    """Fails the next commit that includes a transfer row"""

    def __init__(self):
        super().__init__()
        self.fail_transfers = False

    def _apply_writes(self, writes):
        if self.fail_transfers and any(w.table == TRANSFERS_TABLE for w in writes):
            raise StoreFailureError("connection lost")
        super()._apply_writes(writes)


class TransferTestBase:

    def setup_method(self):
        self.storage = FlakyCommitStorage()
        self.config = BankCoreConfig()
        self.events = EventDispatcher()
        self.customers = CustomerDirectory(self.storage)
        self.ledger = AccountLedger(self.storage, self.config)
        self.accounts = AccountManager(self.storage, self.ledger, self.config)
        self.admin = EmployeePrincipal("emp-1", EmployeeRole.ADMIN)

        self.alice = self.customers.register_customer("alice@example.com", "Alice", "Smith")
        self.bob = self.customers.register_customer("Bob@Example.com", "Bob", "Jones")
        self.alice_p = CustomerPrincipal(self.alice.id)
        self.bob_p = CustomerPrincipal(self.bob.id)

        self.transfers = self._orchestrator()

    def _orchestrator(self, **kwargs):
        return TransferOrchestrator(self.storage, self.ledger, self.customers, self.config,
                                    event_dispatcher=self.events, **kwargs)

    def _open(self, principal, account_type=AccountType.SAVINGS, deposit=None):
        return self.accounts.open_account(principal, account_type,
                                          initial_deposit=usd(deposit) if deposit else None)


class TestOwnAccountTransfers(TransferTestBase):

    def test_moves_funds_between_own_accounts(self):
        """Test moving money between a customer's own accounts"""
        a = self._open(self.alice_p, deposit="200")
        b = self._open(self.alice_p, AccountType.CHECKING, deposit="10")

        receipt = self.transfers.transfer_own_accounts(a.id, b.id, usd("50"), self.alice_p)

        assert self.ledger.get_balance(a.id) == usd("150")
        assert self.ledger.get_balance(b.id) == usd("60")
        assert self.storage.count(TRANSFERS_TABLE) == 1
        entries = self.ledger.get_transfer_entries(receipt.transfer.id)
        assert {e.kind for e in entries} == {EntryKind.TRANSFER_DEBIT, EntryKind.TRANSFER_CREDIT}
        assert receipt.debit_entry.counterpart_account_id == b.id
        assert receipt.credit_entry.description == f"Transfer from {a.account_number}"
        assert receipt.transfer.description == "Own account transfer"
        assert receipt.transfer.transfer_type == TransferType.ACCOUNT_TO_ACCOUNT
        assert self.ledger.verify_account(a.id)
        assert self.ledger.verify_account(b.id)

    def test_same_account_rejected(self):
        """Test a transfer to the same account"""
        a = self._open(self.alice_p, deposit="100")
        with pytest.raises(ValidationError, match="must differ"):
            self.transfers.transfer_own_accounts(a.id, a.id, usd("5"), self.alice_p)

    def test_other_customers_account_is_not_found(self):
        """Test transferring from another customer's account"""
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.bob_p)

        with pytest.raises(AccountNotFoundError):
            self.transfers.transfer_own_accounts(a.id, b.id, usd("5"), self.alice_p)
        assert self.ledger.get_balance(a.id) == usd("100")

    def test_insufficient_funds_leaves_everything_untouched(self):
        """Test an overdraw attempt changes nothing"""
        a = self._open(self.alice_p, deposit="20")
        b = self._open(self.alice_p, AccountType.CHECKING)

        with pytest.raises(InsufficientFundsError):
            self.transfers.transfer_own_accounts(a.id, b.id, usd("50"), self.alice_p)

        assert self.ledger.get_balance(a.id) == usd("20")
        assert self.storage.count(TRANSFERS_TABLE) == 0
        assert self.storage.count(REFERENCES_TABLE) == 0

    def test_frozen_destination_fails_atomically(self):
        """Test a frozen destination undoes the debit leg"""
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.alice_p, AccountType.CHECKING, deposit="5")
        self.accounts.freeze_account(b.id, self.admin)
        entries_before = self.storage.count(ENTRIES_TABLE)

        with pytest.raises(AccountInactiveError):
            self.transfers.transfer_own_accounts(a.id, b.id, usd("50"), self.alice_p)

        assert self.ledger.get_balance(a.id) == usd("100")
        assert self.ledger.get_balance(b.id) == usd("5")
        assert self.storage.count(ENTRIES_TABLE) == entries_before

    def test_minimum_amount(self):
        """Test the minimum transfer amount"""
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.alice_p, AccountType.CHECKING)

        with pytest.raises(InvalidAmountError, match="Minimum transfer amount is 1.00"):
            self.transfers.transfer_own_accounts(a.id, b.id, usd("0.99"), self.alice_p)

    def test_store_failure_rolls_back_both_legs(self):
        """Test a store failure leaves neither leg applied"""
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.alice_p, AccountType.CHECKING)
        self.storage.fail_transfers = True

        with pytest.raises(StoreFailureError):
            self.transfers.transfer_own_accounts(a.id, b.id, usd("40"), self.alice_p)

        assert self.ledger.get_balance(a.id) == usd("100")
        assert self.ledger.get_balance(b.id) == usd("0")
        assert self.storage.count(TRANSFERS_TABLE) == 0

    def test_completed_event(self):
        """Test the transfer completed event"""
        received = []
        self.events.subscribe(DomainEvent.TRANSFER_COMPLETED, received.append)
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.alice_p, AccountType.CHECKING)

        receipt = self.transfers.transfer_own_accounts(a.id, b.id, usd("10"), self.alice_p)

        assert len(received) == 1
        assert received[0].data["reference_number"] == receipt.reference_number


class TestUserTransfers(TransferTestBase):

    def test_transfer_to_primary_account(self):
        """Test money sent by email lands in the primary account"""
        a = self._open(self.alice_p, deposit="100")
        self._open(self.bob_p, AccountType.CHECKING)
        bob_savings = self._open(self.bob_p)

        receipt = self.transfers.transfer_to_user(a.id, "BOB@example.com", usd("25"), self.alice_p)

        assert receipt.transfer.to_account_id == bob_savings.id
        assert receipt.transfer.to_customer_id == self.bob.id
        assert receipt.transfer.transfer_type == TransferType.USER_TO_USER
        assert receipt.debit_entry.description == "Transfer to Bob Jones"
        assert receipt.credit_entry.description == "Transfer from Alice Smith"
        assert self.ledger.get_balance(bob_savings.id) == usd("25")

    def test_unknown_recipient(self):
        """Test an unknown recipient email"""
        a = self._open(self.alice_p, deposit="100")
        with pytest.raises(RecipientNotFoundError):
            self.transfers.transfer_to_user(a.id, "nobody@example.com", usd("5"), self.alice_p)

    def test_self_transfer(self):
        """Test sending money to yourself by email"""
        a = self._open(self.alice_p, deposit="100")
        with pytest.raises(SelfTransferNotAllowedError, match="Cannot transfer to yourself"):
            self.transfers.transfer_to_user(a.id, "alice@example.com", usd("5"), self.alice_p)

    def test_recipient_without_savings_account(self):
        """Test a recipient with no savings account"""
        a = self._open(self.alice_p, deposit="100")
        self._open(self.bob_p, AccountType.CHECKING)

        with pytest.raises(RecipientAccountUnavailableError):
            self.transfers.transfer_to_user(a.id, "bob@example.com", usd("5"), self.alice_p)
        assert self.ledger.get_balance(a.id) == usd("100")

    def test_recipient_with_only_frozen_savings(self):
        """Test a recipient whose savings account is frozen"""
        a = self._open(self.alice_p, deposit="100")
        bob_savings = self._open(self.bob_p)
        self.accounts.freeze_account(bob_savings.id, self.admin)

        with pytest.raises(RecipientAccountUnavailableError):
            self.transfers.transfer_to_user(a.id, "bob@example.com", usd("5"), self.alice_p)


class TestAccountNumberTransfers(TransferTestBase):

    def test_transfer_by_account_number(self):
        """Test transferring to an account number"""
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.bob_p, AccountType.BUSINESS)

        receipt = self.transfers.transfer_to_account_number(a.id, b.account_number, usd("30"), self.alice_p,
                                                            description="Invoice 42")

        assert self.ledger.get_balance(b.id) == usd("30")
        assert receipt.transfer.description == "Invoice 42"
        assert receipt.credit_entry.description == "Invoice 42"

    def test_unknown_account_number(self):
        """Test an unknown destination account number"""
        a = self._open(self.alice_p, deposit="100")
        with pytest.raises(AccountNotFoundError):
            self.transfers.transfer_to_account_number(a.id, "ACC000", usd("5"), self.alice_p)

    def test_closed_destination(self):
        """Test a closed destination account"""
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.bob_p)
        self.accounts.close_account(b.id, self.admin)

        with pytest.raises(AccountInactiveError, match="status: closed"):
            self.transfers.transfer_to_account_number(a.id, b.account_number, usd("5"), self.alice_p)
        assert self.ledger.get_balance(a.id) == usd("100")


class TestReferences(TransferTestBase):

    def test_reference_format(self):
        """Test the reference number format"""
        assert re.match(r'^TRF\d{13,}[A-Z0-9]{9}$', generate_reference_number())

    def test_references_are_unique(self):
        """Test references do not repeat"""
        a = self._open(self.alice_p, deposit="1000")
        b = self._open(self.alice_p, AccountType.CHECKING)

        references = {
            self.transfers.transfer_own_accounts(a.id, b.id, usd("1"), self.alice_p).reference_number
            for _ in range(25)
        }
        assert len(references) == 25

    def test_collision_regenerates(self):
        """Test a colliding reference is regenerated"""
        generated = iter(["TRFDUPLICATE", "TRFDUPLICATE", "TRFFRESH"])
        transfers = self._orchestrator(reference_generator=lambda: next(generated))
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.alice_p, AccountType.CHECKING)

        first = transfers.transfer_own_accounts(a.id, b.id, usd("5"), self.alice_p)
        second = transfers.transfer_own_accounts(a.id, b.id, usd("5"), self.alice_p)

        assert first.reference_number == "TRFDUPLICATE"
        assert second.reference_number == "TRFFRESH"

    def test_exhausted_attempts(self):
        """Test giving up after repeated collisions"""
        transfers = self._orchestrator(reference_generator=lambda: "TRFSAME")
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.alice_p, AccountType.CHECKING)
        transfers.transfer_own_accounts(a.id, b.id, usd("5"), self.alice_p)

        with pytest.raises(ReferenceGenerationError, match="5 attempts"):
            transfers.transfer_own_accounts(a.id, b.id, usd("5"), self.alice_p)
        assert self.ledger.get_balance(a.id) == usd("95")

    def test_lookup(self):
        """Test transfer lookups"""
        a = self._open(self.alice_p, deposit="100")
        b = self._open(self.bob_p)
        receipt = self.transfers.transfer_to_user(a.id, "bob@example.com", usd("5"), self.alice_p)

        assert self.transfers.get_transfer(receipt.transfer.id) == receipt.transfer
        assert self.transfers.get_transfer_by_reference(receipt.reference_number).id == receipt.transfer.id
        assert [t.id for t in self.transfers.get_customer_transfers(self.bob.id)] == [receipt.transfer.id]
        assert self.ledger.get_balance(b.id) == usd("5")

        with pytest.raises(TransferNotFoundError):
            self.transfers.get_transfer_by_reference("TRFNOPE")


class TestConcurrentTransfers(TransferTestBase):

    def test_opposite_transfers_do_not_deadlock(self):
        """Test opposite transfers between two accounts do not deadlock"""
        a = self._open(self.alice_p, deposit="500")
        b = self._open(self.alice_p, AccountType.CHECKING, deposit="500")
        errors = []

        def move(source, destination):
            try:
                for _ in range(10):
                    self.transfers.transfer_own_accounts(source, destination, usd("5"), self.alice_p)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=move, args=(a.id, b.id)),
                   threading.Thread(target=move, args=(b.id, a.id))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert self.ledger.get_balance(a.id) + self.ledger.get_balance(b.id) == usd("1000")
        assert self.storage.count(TRANSFERS_TABLE) == 20
        assert self.ledger.verify_account(a.id)
        assert self.ledger.verify_account(b.id)
