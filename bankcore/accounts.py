"""
Account Management Module

Deposit accounts and their lifecycle: opening (with an optional initial
deposit), freezing, unfreezing and closing. Balances are never written here;
every balance change goes through AccountLedger.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union
import random
import time
import uuid

from .audit import AuditAction, AuditRecorder
from .config import BankCoreConfig
from .currency import Currency, Money, parse_currency
from .errors import (
    AccountNotEmptyError, AccountNotFoundError, CurrencyMismatchError,
    InvalidAmountError, InvalidStateTransitionError, PermissionDeniedError,
    StoreFailureError
)
from .events import DomainEvent, EventDispatcher, PostCommitMixin
from .logging_config import get_logger, log_action
from .principals import CustomerPrincipal, EmployeePrincipal, Principal
from .storage import StorageInterface, StorageRecord, UnitOfWork, parse_datetime


ACCOUNTS_TABLE = "accounts"


class AccountType(Enum):
    """Deposit account products"""
    SAVINGS = "savings"
    CHECKING = "checking"
    BUSINESS = "business"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"      # Normal operation
    FROZEN = "frozen"      # Temporarily suspended
    CLOSED = "closed"      # Permanently closed


@dataclass(frozen=True)
class Account(StorageRecord):
    """
    Deposit account. ``version`` increases by one on every balance mutation
    and doubles as the sequence number of the account's latest ledger entry.
    """
    account_number: str
    customer_id: str
    account_type: AccountType
    currency: Currency
    balance: Money
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 0

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")
        if self.balance.is_negative():
            raise ValueError("Account balance cannot be negative")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict) -> 'Account':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            account_type=AccountType(data['account_type']),
            currency=Currency[data['currency']],
            balance=Money.from_dict(data['balance']),
            status=AccountStatus(data['status']),
            version=data['version']
        )


def generate_account_number() -> str:
    """ACC followed by the epoch milliseconds and a 3-digit random suffix"""
    return f"ACC{int(time.time() * 1000)}{random.randint(0, 999):03d}"


def new_account(customer_id: str, account_type: AccountType, currency: Currency,
                account_number: str) -> Account:
    """Build a fresh, empty, active account"""
    now = datetime.now(timezone.utc)
    return Account(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        account_number=account_number,
        customer_id=customer_id,
        account_type=account_type,
        currency=currency,
        balance=Money.zero(currency)
    )


def load_account(source: Union[UnitOfWork, StorageInterface], account_id: str) -> Account:
    """Load an account through a unit of work or storage, or raise AccountNotFoundError"""
    data = source.load(ACCOUNTS_TABLE, account_id)
    if not data:
        raise AccountNotFoundError(account_id)
    return Account.from_dict(data)


def load_owned_account(source: Union[UnitOfWork, StorageInterface], account_id: str,
                       owner: CustomerPrincipal) -> Account:
    """Like load_account, but an account belonging to someone else is reported as missing"""
    account = load_account(source, account_id)
    if account.customer_id != owner.id:
        raise AccountNotFoundError(account_id)
    return account


ALLOWED_STATUS_CHANGES = {
    AccountStatus.ACTIVE: {AccountStatus.FROZEN, AccountStatus.CLOSED},
    AccountStatus.FROZEN: {AccountStatus.ACTIVE, AccountStatus.CLOSED},
    AccountStatus.CLOSED: set(),
}


class AccountManager(PostCommitMixin):
    """
    Manages account opening and lifecycle states
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger,
        config: Optional[BankCoreConfig] = None,
        audit: Optional[AuditRecorder] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.config = config or BankCoreConfig()
        self.audit = audit
        self.event_dispatcher = event_dispatcher
        self.logger = get_logger("bankcore.accounts")
        self.number_attempts = 5

    def open_account(
        self,
        owner: CustomerPrincipal,
        account_type: AccountType,
        currency: Optional[Currency] = None,
        initial_deposit: Optional[Money] = None
    ) -> Account:
        """
        Open a new account for a customer

        Args:
            owner: Customer who will own the account
            account_type: savings, checking or business
            currency: Account currency (configured default if omitted)
            initial_deposit: Optional opening balance, posted as a deposit entry

        Returns:
            The committed Account
        """
        currency = currency or parse_currency(self.config.default_currency)
        if initial_deposit is not None:
            if initial_deposit.currency != currency:
                raise CurrencyMismatchError(
                    f"Initial deposit in {initial_deposit.currency.code}, account in {currency.code}"
                )
            if initial_deposit.is_negative():
                raise InvalidAmountError("Initial deposit cannot be negative")

        def work(uow: UnitOfWork) -> Account:
            account = new_account(owner.id, account_type, currency, self._claim_account_number(uow))
            uow.insert(ACCOUNTS_TABLE, account.id, account.to_dict())
            if initial_deposit is not None and initial_deposit.is_positive():
                account, _ = self.ledger.apply_credit(
                    uow, account.id, initial_deposit, description="Initial deposit"
                )
            return account

        account = self.storage.run_atomic(work)

        log_action(self.logger, "info", f"Opened {account_type.value} account {account.account_number}",
                   user_id=owner.id, action="open_account", resource=f"account:{account.id}",
                   extra={"currency": currency.code, "balance": str(account.balance.amount)})
        self._record_audit("account", account.id, AuditAction.ACCOUNT_OPENED,
                           actor_id=owner.id, after=account.to_dict())
        self._publish_event(DomainEvent.ACCOUNT_OPENED, "account", account.id, {
            "account_number": account.account_number,
            "customer_id": account.customer_id,
            "account_type": account.account_type.value,
            "balance": str(account.balance.amount),
            "currency": currency.code
        })
        return account

    def _claim_account_number(self, uow: UnitOfWork) -> str:
        for _ in range(self.number_attempts):
            number = generate_account_number()
            uow.lock("account_numbers", [number])
            if not uow.find(ACCOUNTS_TABLE, {"account_number": number}):
                return number
            self.logger.warning(f"Account number collision on {number}, regenerating")
        raise StoreFailureError(f"Could not generate a unique account number in {self.number_attempts} attempts")

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(ACCOUNTS_TABLE, account_id)
        return Account.from_dict(data) if data else None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        matches = self.storage.find(ACCOUNTS_TABLE, {"account_number": account_number})
        return Account.from_dict(matches[0]) if matches else None

    def get_customer_accounts(self, customer_id: str) -> List[Account]:
        """Get all accounts for a customer, oldest first"""
        accounts = [Account.from_dict(data)
                    for data in self.storage.find(ACCOUNTS_TABLE, {"customer_id": customer_id})]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def find_primary_account(self, customer_id: str) -> Optional[Account]:
        """The customer's designated account for incoming transfers: the oldest active savings account"""
        return find_primary_account(self.storage, customer_id)

    def update_account_status(self, account_id: str, new_status: AccountStatus,
                              actor: Principal, reason: str = "") -> Account:
        """Change an account's lifecycle state. Staff only."""
        if not isinstance(actor, EmployeePrincipal):
            raise PermissionDeniedError("Only staff can change account status")

        def work(uow: UnitOfWork):
            uow.lock(ACCOUNTS_TABLE, [account_id])
            account = load_account(uow, account_id)
            if new_status == account.status:
                return account, account
            if new_status not in ALLOWED_STATUS_CHANGES[account.status]:
                raise InvalidStateTransitionError("account", account_id, account.status.value, new_status.value)
            if new_status == AccountStatus.CLOSED and not account.balance.is_zero():
                raise AccountNotEmptyError(account_id, account.balance.to_string())

            updated = replace(account, status=new_status, updated_at=datetime.now(timezone.utc))
            uow.save(ACCOUNTS_TABLE, account_id, updated.to_dict(), expected_version=account.version)
            return account, updated

        before, account = self.storage.run_atomic(work)
        if before.status == account.status:
            return account

        log_action(self.logger, "info",
                   f"Account {account.account_number} {before.status.value} -> {account.status.value}",
                   user_id=actor.id, action="update_account_status", resource=f"account:{account.id}",
                   extra={"reason": reason})
        self._record_audit("account", account.id, AuditAction.ACCOUNT_STATUS_CHANGED, actor_id=actor.id,
                           before={"status": before.status.value},
                           after={"status": account.status.value, "reason": reason})
        self._publish_event(DomainEvent.ACCOUNT_STATUS_CHANGED, "account", account.id, {
            "old_status": before.status.value,
            "new_status": account.status.value,
            "reason": reason
        })
        return account

    def freeze_account(self, account_id: str, actor: Principal, reason: str = "") -> Account:
        """Freeze an account"""
        return self.update_account_status(account_id, AccountStatus.FROZEN, actor, reason)

    def unfreeze_account(self, account_id: str, actor: Principal, reason: str = "") -> Account:
        """Unfreeze an account"""
        return self.update_account_status(account_id, AccountStatus.ACTIVE, actor, reason)

    def close_account(self, account_id: str, actor: Principal, reason: str = "") -> Account:
        """Close an account; the balance must be zero"""
        return self.update_account_status(account_id, AccountStatus.CLOSED, actor, reason)


def find_primary_account(source: Union[UnitOfWork, StorageInterface], customer_id: str) -> Optional[Account]:
    """Oldest active savings account of a customer, if any"""
    candidates = [
        Account.from_dict(data)
        for data in source.find(ACCOUNTS_TABLE, {
            "customer_id": customer_id,
            "account_type": AccountType.SAVINGS.value,
            "status": AccountStatus.ACTIVE.value
        })
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda a: a.created_at)
