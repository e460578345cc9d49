"""
Error Taxonomy Module

Every failure raised by the core belongs to one of four families:

- ValidationError: malformed or out-of-range input, rejected before any
  store access
- DomainError: a business rule refused the operation; nothing was written
- ConcurrencyConflictError: a competing mutation won the race; safe to retry
- StoreFailureError: the store could not commit; the unit was rolled back

Validation and domain errors subclass ValueError so callers that only
distinguish "bad request" from "server fault" can keep catching ValueError.
"""

from typing import Optional


class BankCoreError(Exception):
    """Base class for all errors raised by the banking core"""


class ValidationError(BankCoreError, ValueError):
    """Input failed validation before touching the store"""


class InvalidAmountError(ValidationError):
    """Amount is not positive or below the permitted minimum"""


class InvalidLoanTermsError(ValidationError):
    """Loan principal, tenure or rate outside the accepted range"""


class CurrencyMismatchError(ValidationError):
    """Amount currency differs from the account currency"""


class DomainError(BankCoreError, ValueError):
    """A business rule rejected the operation"""


class AccountNotFoundError(DomainError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class AccountInactiveError(DomainError):
    def __init__(self, account_id: str, status: str):
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} is not active (status: {status})")


class AccountNotEmptyError(DomainError):
    def __init__(self, account_id: str, balance: str):
        self.account_id = account_id
        super().__init__(f"Cannot close account {account_id} with non-zero balance: {balance}")


class InsufficientFundsError(DomainError):
    def __init__(self, account_id: str, available: str, requested: str):
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds in account {account_id}: available {available}, requested {requested}"
        )


class TransferNotFoundError(DomainError):
    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"Transfer {transfer_id} not found")


class RecipientNotFoundError(DomainError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Recipient {email} not found")


class SelfTransferNotAllowedError(DomainError):
    def __init__(self):
        super().__init__("Cannot transfer to yourself")


class RecipientAccountUnavailableError(DomainError):
    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Recipient {customer_id} has no active savings account")


class LoanNotFoundError(DomainError):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class LoanNotActiveError(DomainError):
    def __init__(self, loan_id: str, status: str):
        self.loan_id = loan_id
        self.status = status
        super().__init__(f"Loan {loan_id} is not active (status: {status})")


class NoPendingInstallmentsError(DomainError):
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} has no pending installments")


class ApplicationNotFoundError(DomainError):
    def __init__(self, application_id: str):
        self.application_id = application_id
        super().__init__(f"Application {application_id} not found")


class DuplicateApplicationError(DomainError):
    def __init__(self, card_type: str):
        self.card_type = card_type
        super().__init__(f"You already have a pending application for {card_type} card")


class DuplicateCustomerError(DomainError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Customer with email {email} already exists")


class InvalidStateTransitionError(DomainError):
    def __init__(self, entity_type: str, entity_id: str, current: str, target: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        message = f"Cannot transition {entity_type} {entity_id} from {current}"
        if target:
            message += f" to {target}"
        super().__init__(message)


class PermissionDeniedError(DomainError):
    """Principal is not allowed to perform the action"""


class ConcurrencyConflictError(BankCoreError):
    """A competing mutation touched the same records; the unit was discarded"""


class StoreFailureError(BankCoreError):
    """Commit or rollback failed at the storage layer"""


class ReferenceGenerationError(StoreFailureError):
    """No unique transfer reference could be generated"""
