"""
Account Ledger Module

The sole authority for balance changes. Every credit or debit writes the
new balance and exactly one append-only LedgerEntry in the same unit of
work, so replaying an account's entries in sequence order always reproduces
its current balance.

CRITICAL: an entry without a balance change, or a balance change without an
entry, must never be committed.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
import uuid

from .accounts import ACCOUNTS_TABLE, Account, load_account, load_owned_account
from .audit import AuditAction, AuditRecorder
from .config import BankCoreConfig
from .currency import Money
from .errors import (
    AccountInactiveError, CurrencyMismatchError, DomainError,
    InsufficientFundsError, InvalidAmountError
)
from .events import DomainEvent, EventDispatcher, PostCommitMixin
from .logging_config import get_logger, log_action
from .principals import CustomerPrincipal
from .storage import StorageInterface, StorageRecord, UnitOfWork, parse_datetime


ENTRIES_TABLE = "ledger_entries"


class EntryKind(Enum):
    """What moved the balance"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_DEBIT = "transfer_debit"
    TRANSFER_CREDIT = "transfer_credit"

    @property
    def is_debit(self) -> bool:
        return self in (EntryKind.WITHDRAWAL, EntryKind.TRANSFER_DEBIT)


class EntryStatus(Enum):
    COMPLETED = "completed"


@dataclass(frozen=True)
class LedgerEntry(StorageRecord):
    """
    One balance-affecting event on one account. Never updated after insert.
    ``sequence`` equals the account version the entry produced.
    """
    account_id: str
    kind: EntryKind
    amount: Money
    balance_after: Money
    sequence: int
    description: str
    counterpart_account_id: Optional[str] = None
    transfer_id: Optional[str] = None
    status: EntryStatus = EntryStatus.COMPLETED

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Ledger entry amount must be positive")

    @property
    def signed_amount(self) -> Money:
        return -self.amount if self.kind.is_debit else self.amount

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_id=data['account_id'],
            kind=EntryKind(data['kind']),
            amount=Money.from_dict(data['amount']),
            balance_after=Money.from_dict(data['balance_after']),
            sequence=data['sequence'],
            description=data['description'],
            counterpart_account_id=data.get('counterpart_account_id'),
            transfer_id=data.get('transfer_id'),
            status=EntryStatus(data['status'])
        )


def new_ledger_entry(account: Account, kind: EntryKind, amount: Money, description: str,
                     counterpart_account_id: Optional[str] = None,
                     transfer_id: Optional[str] = None) -> LedgerEntry:
    """Build the entry for an account that has already been updated"""
    now = datetime.now(timezone.utc)
    return LedgerEntry(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        account_id=account.id,
        kind=kind,
        amount=amount,
        balance_after=account.balance,
        sequence=account.version,
        description=description,
        counterpart_account_id=counterpart_account_id,
        transfer_id=transfer_id
    )


def validate_amount(amount: Money) -> None:
    """Reject non-Money and non-positive amounts before any store access"""
    if not isinstance(amount, Money):
        raise InvalidAmountError(f"Amount must be Money, got {type(amount).__name__}")
    if not amount.is_positive():
        raise InvalidAmountError(f"Amount must be greater than 0, got {amount.to_string()}")


class AccountLedger(PostCommitMixin):
    """
    Balance mutation primitives and the append-only entry log
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
        self.logger = get_logger("bankcore.ledger")

    def credit(self, account_id: str, amount: Money, description: Optional[str] = None,
               owner: Optional[CustomerPrincipal] = None) -> LedgerEntry:
        """
        Deposit into an account

        Args:
            account_id: Account to credit
            amount: Positive amount in the account currency
            description: Entry description (defaults to "Deposit")
            owner: When given, the account must belong to this customer

        Returns:
            The committed LedgerEntry
        """
        return self._post(account_id, amount, EntryKind.DEPOSIT, description or "Deposit", owner)

    def debit(self, account_id: str, amount: Money, description: Optional[str] = None,
              owner: Optional[CustomerPrincipal] = None) -> LedgerEntry:
        """
        Withdraw from an account; fails with InsufficientFundsError rather
        than letting the balance go negative.
        """
        return self._post(account_id, amount, EntryKind.WITHDRAWAL, description or "Withdrawal", owner)

    def _post(self, account_id: str, amount: Money, kind: EntryKind, description: str,
              owner: Optional[CustomerPrincipal]) -> LedgerEntry:
        validate_amount(amount)

        def work(uow: UnitOfWork) -> Tuple[Account, Account, LedgerEntry]:
            uow.lock(ACCOUNTS_TABLE, [account_id])
            if owner is not None:
                before = load_owned_account(uow, account_id, owner)
            else:
                before = load_account(uow, account_id)
            after, entry = self._apply(uow, account_id, amount, kind, description)
            return before, after, entry

        actor_id = owner.id if owner else None
        try:
            before, account, entry = self.storage.run_atomic(work)
        except DomainError as e:
            log_action(self.logger, "warning", f"{kind.value} rejected: {e}",
                       user_id=actor_id, action=kind.value, resource=f"account:{account_id}")
            raise

        log_action(self.logger, "info", f"{kind.value} of {amount.to_string()} posted",
                   user_id=actor_id, action=kind.value, resource=f"account:{account_id}",
                   extra={"entry_id": entry.id, "balance_after": str(entry.balance_after.amount)})
        self._record_audit("account", account_id,
                           AuditAction.DEPOSIT if kind == EntryKind.DEPOSIT else AuditAction.WITHDRAWAL,
                           actor_id=actor_id,
                           before={"balance": before.balance.to_dict(), "version": before.version},
                           after={"balance": account.balance.to_dict(), "version": account.version,
                                  "entry_id": entry.id})
        self._publish_event(
            DomainEvent.DEPOSIT_POSTED if kind == EntryKind.DEPOSIT else DomainEvent.WITHDRAWAL_POSTED,
            "account", account_id, {
                "customer_id": account.customer_id,
                "amount": str(amount.amount),
                "currency": amount.currency.code,
                "balance_after": str(entry.balance_after.amount),
                "description": description
            })
        return entry

    def apply_credit(self, uow: UnitOfWork, account_id: str, amount: Money,
                     kind: EntryKind = EntryKind.DEPOSIT, description: str = "Deposit",
                     counterpart_account_id: Optional[str] = None,
                     transfer_id: Optional[str] = None) -> Tuple[Account, LedgerEntry]:
        """Stage a credit inside the caller's unit of work"""
        if kind.is_debit:
            raise ValueError(f"apply_credit cannot post a {kind.value} entry")
        return self._apply(uow, account_id, amount, kind, description, counterpart_account_id, transfer_id)

    def apply_debit(self, uow: UnitOfWork, account_id: str, amount: Money,
                    kind: EntryKind = EntryKind.WITHDRAWAL, description: str = "Withdrawal",
                    counterpart_account_id: Optional[str] = None,
                    transfer_id: Optional[str] = None) -> Tuple[Account, LedgerEntry]:
        """Stage a debit inside the caller's unit of work"""
        if not kind.is_debit:
            raise ValueError(f"apply_debit cannot post a {kind.value} entry")
        return self._apply(uow, account_id, amount, kind, description, counterpart_account_id, transfer_id)

    def _apply(self, uow: UnitOfWork, account_id: str, amount: Money, kind: EntryKind,
               description: str, counterpart_account_id: Optional[str] = None,
               transfer_id: Optional[str] = None) -> Tuple[Account, LedgerEntry]:
        validate_amount(amount)
        uow.lock(ACCOUNTS_TABLE, [account_id])
        account = load_account(uow, account_id)

        if not account.is_active:
            raise AccountInactiveError(account_id, account.status.value)
        if amount.currency != account.currency:
            raise CurrencyMismatchError(
                f"Cannot post {amount.currency.code} to {account.currency.code} account {account_id}"
            )

        if kind.is_debit:
            if account.balance < amount:
                raise InsufficientFundsError(
                    account_id, account.balance.to_string(), amount.to_string()
                )
            new_balance = account.balance - amount
        else:
            new_balance = account.balance + amount

        updated = replace(
            account,
            balance=new_balance,
            version=account.version + 1,
            updated_at=datetime.now(timezone.utc)
        )
        entry = new_ledger_entry(updated, kind, amount, description, counterpart_account_id, transfer_id)

        uow.save(ACCOUNTS_TABLE, account_id, updated.to_dict(), expected_version=account.version)
        uow.insert(ENTRIES_TABLE, entry.id, entry.to_dict())
        return updated, entry

    def get_balance(self, account_id: str) -> Money:
        return load_account(self.storage, account_id).balance

    def get_entries(self, account_id: str, owner: Optional[CustomerPrincipal] = None) -> List[LedgerEntry]:
        """
        All entries for an account in sequence order. With ``owner`` the
        account must belong to that customer, otherwise AccountNotFoundError.
        """
        if owner is not None:
            load_owned_account(self.storage, account_id, owner)
        entries = [LedgerEntry.from_dict(data)
                   for data in self.storage.find(ENTRIES_TABLE, {"account_id": account_id})]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def get_customer_entries(self, owner: CustomerPrincipal, limit: int = 50) -> List[LedgerEntry]:
        """Most recent entries across all of a customer's accounts, newest first"""
        entries = []
        for account in self.storage.find(ACCOUNTS_TABLE, {"customer_id": owner.id}):
            entries.extend(LedgerEntry.from_dict(data)
                           for data in self.storage.find(ENTRIES_TABLE, {"account_id": account['id']}))
        entries.sort(key=lambda e: (e.created_at, e.sequence), reverse=True)
        return entries[:limit]

    def get_transfer_entries(self, transfer_id: str) -> List[LedgerEntry]:
        return [LedgerEntry.from_dict(data)
                for data in self.storage.find(ENTRIES_TABLE, {"transfer_id": transfer_id})]

    def replay_balance(self, account_id: str) -> Money:
        """Rebuild the balance by summing signed entry amounts in sequence order"""
        account = load_account(self.storage, account_id)
        balance = Money.zero(account.currency)
        for entry in self.get_entries(account_id):
            balance = balance + entry.signed_amount
        return balance

    def verify_account(self, account_id: str) -> bool:
        """
        Check the entry log against the stored account: sequences are
        contiguous from 1, every balance_after matches the running total,
        and the final total equals the stored balance.
        """
        account = load_account(self.storage, account_id)
        entries = self.get_entries(account_id)
        running = Money.zero(account.currency)
        for expected_sequence, entry in enumerate(entries, start=1):
            running = running + entry.signed_amount
            if entry.sequence != expected_sequence or entry.balance_after != running:
                self.logger.error(f"Ledger mismatch on account {account_id} at sequence {entry.sequence}")
                return False
        if running != account.balance or account.version != len(entries):
            self.logger.error(f"Ledger total for account {account_id} does not match stored balance")
            return False
        return True
