"""
Transfer Orchestrator Module

Moves money between accounts as one atomic unit: both account locks are
taken in ascending id order, then the debit leg, the credit leg, the
Transfer row and the reference-number claim are staged together. Either all
of them commit or none do.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional
import secrets
import string
import time
import uuid

from .accounts import ACCOUNTS_TABLE, Account, find_primary_account, load_account, load_owned_account
from .audit import AuditAction, AuditRecorder
from .config import BankCoreConfig
from .currency import Money
from .customers import CustomerDirectory
from .errors import (
    AccountNotFoundError, DomainError, InvalidAmountError, RecipientAccountUnavailableError,
    RecipientNotFoundError, ReferenceGenerationError, SelfTransferNotAllowedError,
    TransferNotFoundError, ValidationError
)
from .events import DomainEvent, EventDispatcher, PostCommitMixin
from .ledger import AccountLedger, EntryKind, LedgerEntry, validate_amount
from .logging_config import get_logger, log_action
from .principals import CustomerPrincipal
from .storage import StorageInterface, StorageRecord, UnitOfWork, parse_datetime


TRANSFERS_TABLE = "transfers"
REFERENCES_TABLE = "transfer_references"

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


class TransferType(Enum):
    ACCOUNT_TO_ACCOUNT = "account-to-account"
    USER_TO_USER = "user-to-user"
    EXTERNAL = "external"


class TransferStatus(Enum):
    # A transfer row only exists once its unit has committed
    COMPLETED = "completed"


@dataclass(frozen=True)
class Transfer(StorageRecord):
    """A completed movement of funds between two accounts"""
    from_account_id: str
    to_account_id: str
    from_customer_id: str
    to_customer_id: str
    amount: Money
    transfer_type: TransferType
    reference_number: str
    description: str
    status: TransferStatus = TransferStatus.COMPLETED
    transferred_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'Transfer':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            from_account_id=data['from_account_id'],
            to_account_id=data['to_account_id'],
            from_customer_id=data['from_customer_id'],
            to_customer_id=data['to_customer_id'],
            amount=Money.from_dict(data['amount']),
            transfer_type=TransferType(data['transfer_type']),
            reference_number=data['reference_number'],
            description=data['description'],
            status=TransferStatus(data['status']),
            transferred_at=parse_datetime(data.get('transferred_at'))
        )


@dataclass(frozen=True)
class TransferReceipt:
    """A committed transfer together with its two ledger legs"""
    transfer: Transfer
    debit_entry: LedgerEntry
    credit_entry: LedgerEntry

    @property
    def reference_number(self) -> str:
        return self.transfer.reference_number


def generate_reference_number() -> str:
    """TRF, the epoch milliseconds, then 9 random uppercase alphanumerics"""
    suffix = ''.join(secrets.choice(REFERENCE_ALPHABET) for _ in range(9))
    return f"TRF{int(time.time() * 1000)}{suffix}"


def new_transfer(transfer_id: str, source: Account, destination: Account, amount: Money,
                 transfer_type: TransferType, reference_number: str, description: str) -> Transfer:
    now = datetime.now(timezone.utc)
    return Transfer(
        id=transfer_id,
        created_at=now,
        updated_at=now,
        from_account_id=source.id,
        to_account_id=destination.id,
        from_customer_id=source.customer_id,
        to_customer_id=destination.customer_id,
        amount=amount,
        transfer_type=transfer_type,
        reference_number=reference_number,
        description=description,
        transferred_at=now
    )


class TransferOrchestrator(PostCommitMixin):
    """
    Own-account, user-to-user and by-account-number transfers
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: AccountLedger,
        customers: CustomerDirectory,
        config: Optional[BankCoreConfig] = None,
        audit: Optional[AuditRecorder] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        reference_generator: Callable[[], str] = generate_reference_number
    ):
        self.storage = storage
        self.ledger = ledger
        self.customers = customers
        self.config = config or BankCoreConfig()
        self.audit = audit
        self.event_dispatcher = event_dispatcher
        self.reference_generator = reference_generator
        self.logger = get_logger("bankcore.transfers")

    def transfer_own_accounts(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Money,
        owner: CustomerPrincipal,
        description: Optional[str] = None
    ) -> TransferReceipt:
        """
        Move funds between two accounts of the same customer

        Args:
            from_account_id: Account to debit; must belong to owner
            to_account_id: Account to credit; must belong to owner
            amount: Amount in the accounts' currency, at least the minimum transfer amount
            owner: Customer initiating the transfer
            description: Transfer description (defaults to "Own account transfer")

        Returns:
            TransferReceipt with the Transfer and both ledger entries
        """
        self._validate_amount(amount)
        if from_account_id == to_account_id:
            raise ValidationError("Source and destination accounts must differ")

        def work(uow: UnitOfWork) -> TransferReceipt:
            uow.lock(ACCOUNTS_TABLE, [from_account_id, to_account_id])
            source = load_owned_account(uow, from_account_id, owner)
            destination = load_owned_account(uow, to_account_id, owner)
            return self._execute(
                uow, source, destination, amount, TransferType.ACCOUNT_TO_ACCOUNT,
                description or "Own account transfer",
                debit_description=f"Transfer to {destination.account_number}",
                credit_description=f"Transfer from {source.account_number}"
            )

        return self._run("transfer_own_accounts", owner, from_account_id, work)

    def transfer_to_user(
        self,
        from_account_id: str,
        recipient_email: str,
        amount: Money,
        owner: CustomerPrincipal,
        description: Optional[str] = None
    ) -> TransferReceipt:
        """
        Send funds to another customer's primary (savings) account,
        identified by the recipient's email address.
        """
        self._validate_amount(amount)
        recipient = self.customers.find_by_email(recipient_email)
        if recipient is None:
            raise RecipientNotFoundError(recipient_email)
        if recipient.id == owner.id:
            raise SelfTransferNotAllowedError()

        sender = self.customers.get_customer(owner.id)

        def work(uow: UnitOfWork) -> TransferReceipt:
            primary = find_primary_account(uow, recipient.id)
            if primary is None:
                raise RecipientAccountUnavailableError(recipient.id)

            uow.lock(ACCOUNTS_TABLE, [from_account_id, primary.id])
            source = load_owned_account(uow, from_account_id, owner)
            destination = load_account(uow, primary.id)
            if not destination.is_active:
                raise RecipientAccountUnavailableError(recipient.id)

            sender_label = sender.full_name if sender else source.account_number
            return self._execute(
                uow, source, destination, amount, TransferType.USER_TO_USER,
                description or f"Transfer to {recipient.full_name}",
                debit_description=f"Transfer to {recipient.full_name}",
                credit_description=f"Transfer from {sender_label}"
            )

        return self._run("transfer_to_user", owner, from_account_id, work)

    def transfer_to_account_number(
        self,
        from_account_id: str,
        to_account_number: str,
        amount: Money,
        owner: CustomerPrincipal,
        description: Optional[str] = None
    ) -> TransferReceipt:
        """Send funds to any active account identified by its account number"""
        self._validate_amount(amount)

        def work(uow: UnitOfWork) -> TransferReceipt:
            matches = uow.find(ACCOUNTS_TABLE, {"account_number": to_account_number})
            if not matches:
                raise AccountNotFoundError(to_account_number)
            destination_id = matches[0]['id']
            if destination_id == from_account_id:
                raise ValidationError("Source and destination accounts must differ")

            uow.lock(ACCOUNTS_TABLE, [from_account_id, destination_id])
            source = load_owned_account(uow, from_account_id, owner)
            destination = load_account(uow, destination_id)
            return self._execute(
                uow, source, destination, amount, TransferType.ACCOUNT_TO_ACCOUNT,
                description or f"Transfer to {to_account_number}",
                debit_description=description or f"Transfer to {to_account_number}",
                credit_description=description or f"Transfer from {source.account_number}"
            )

        return self._run("transfer_to_account_number", owner, from_account_id, work)

    def _validate_amount(self, amount: Money) -> None:
        validate_amount(amount)
        minimum = Decimal(self.config.min_transfer_amount)
        if amount.amount < minimum:
            raise InvalidAmountError(f"Minimum transfer amount is {minimum}, got {amount.amount}")

    def _run(self, action: str, owner: CustomerPrincipal, from_account_id: str, work) -> TransferReceipt:
        try:
            receipt = self.storage.run_atomic(work)
        except DomainError as e:
            log_action(self.logger, "warning", f"Transfer rejected: {e}", user_id=owner.id,
                       action=action, resource=f"account:{from_account_id}")
            raise

        transfer = receipt.transfer
        log_action(self.logger, "info", f"Transfer {transfer.reference_number} completed",
                   user_id=owner.id, action=action, resource=f"transfer:{transfer.id}",
                   extra={"amount": str(transfer.amount.amount),
                          "currency": transfer.amount.currency.code,
                          "from_account_id": transfer.from_account_id,
                          "to_account_id": transfer.to_account_id})
        self._record_audit("transfer", transfer.id, AuditAction.TRANSFER_COMPLETED,
                           actor_id=owner.id, after=transfer.to_dict())
        self._publish_event(DomainEvent.TRANSFER_COMPLETED, "transfer", transfer.id, {
            "reference_number": transfer.reference_number,
            "transfer_type": transfer.transfer_type.value,
            "amount": str(transfer.amount.amount),
            "currency": transfer.amount.currency.code,
            "from_customer_id": transfer.from_customer_id,
            "to_customer_id": transfer.to_customer_id
        })
        return receipt

    def _execute(self, uow: UnitOfWork, source: Account, destination: Account, amount: Money,
                 transfer_type: TransferType, description: str,
                 debit_description: str, credit_description: str) -> TransferReceipt:
        transfer_id = str(uuid.uuid4())
        reference = self._claim_reference(uow, transfer_id)

        source, debit_entry = self.ledger.apply_debit(
            uow, source.id, amount, EntryKind.TRANSFER_DEBIT, debit_description,
            counterpart_account_id=destination.id, transfer_id=transfer_id
        )
        destination, credit_entry = self.ledger.apply_credit(
            uow, destination.id, amount, EntryKind.TRANSFER_CREDIT, credit_description,
            counterpart_account_id=source.id, transfer_id=transfer_id
        )

        transfer = new_transfer(transfer_id, source, destination, amount, transfer_type, reference, description)
        uow.insert(TRANSFERS_TABLE, transfer.id, transfer.to_dict())
        return TransferReceipt(transfer, debit_entry, credit_entry)

    def _claim_reference(self, uow: UnitOfWork, transfer_id: str) -> str:
        """
        Reserve a fresh reference number inside the unit. The claim row is an
        insert, so a concurrent unit committing the same reference first makes
        this commit fail instead of storing a duplicate.
        """
        for _ in range(self.config.reference_max_attempts):
            reference = self.reference_generator()
            if uow.load(REFERENCES_TABLE, reference) is None:
                uow.insert(REFERENCES_TABLE, reference, {"id": reference, "transfer_id": transfer_id})
                return reference
            self.logger.warning(f"Reference collision on {reference}, regenerating")
        raise ReferenceGenerationError(
            f"Could not generate a unique reference in {self.config.reference_max_attempts} attempts"
        )

    def get_transfer(self, transfer_id: str) -> Transfer:
        data = self.storage.load(TRANSFERS_TABLE, transfer_id)
        if not data:
            raise TransferNotFoundError(transfer_id)
        return Transfer.from_dict(data)

    def get_transfer_by_reference(self, reference_number: str) -> Transfer:
        claim = self.storage.load(REFERENCES_TABLE, reference_number)
        if not claim:
            raise TransferNotFoundError(reference_number)
        return self.get_transfer(claim['transfer_id'])

    def get_customer_transfers(self, customer_id: str) -> List[Transfer]:
        """Transfers sent or received by a customer, newest first"""
        records = {data['id']: data for data in self.storage.find(TRANSFERS_TABLE, {"from_customer_id": customer_id})}
        for data in self.storage.find(TRANSFERS_TABLE, {"to_customer_id": customer_id}):
            records[data['id']] = data
        transfers = [Transfer.from_dict(data) for data in records.values()]
        transfers.sort(key=lambda t: t.transferred_at or t.created_at, reverse=True)
        return transfers
