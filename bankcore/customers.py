"""
Customer Directory Module

Minimal customer records: enough identity to resolve a transfer recipient
by email and to show a name on ledger entries. Profile management and
credentials live outside the core.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import re
import uuid

from .audit import AuditAction, AuditRecorder
from .errors import DuplicateCustomerError, ValidationError
from .events import PostCommitMixin
from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord


EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


@dataclass(frozen=True)
class Customer(StorageRecord):
    """Customer identity as seen by the core"""
    email: str
    first_name: str
    last_name: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def new_customer(email: str, first_name: str, last_name: str) -> Customer:
    """Validate and build a customer record"""
    email = normalize_email(email)
    if not re.match(EMAIL_PATTERN, email):
        raise ValidationError(f"Invalid email format: {email}")
    if not first_name.strip() or not last_name.strip():
        raise ValidationError("First and last name are required")

    now = datetime.now(timezone.utc)
    return Customer(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        email=email,
        first_name=first_name.strip(),
        last_name=last_name.strip()
    )


class CustomerDirectory(PostCommitMixin):
    """Lookup and registration of customers"""

    def __init__(self, storage: StorageInterface, audit: Optional[AuditRecorder] = None):
        self.storage = storage
        self.audit = audit
        self.table_name = "customers"
        self.logger = get_logger("bankcore.customers")

    def register_customer(self, email: str, first_name: str, last_name: str) -> Customer:
        customer = new_customer(email, first_name, last_name)

        def work(uow):
            uow.lock("customer_emails", [customer.email])
            if uow.find(self.table_name, {"email": customer.email}):
                raise DuplicateCustomerError(customer.email)
            uow.insert(self.table_name, customer.id, customer.to_dict())
            return customer

        self.storage.run_atomic(work)
        self.logger.info(f"Registered customer {customer.id}")
        self._record_audit("customer", customer.id, AuditAction.CUSTOMER_REGISTERED,
                           after=customer.to_dict())
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.table_name, customer_id)
        return Customer.from_dict(data) if data else None

    def find_by_email(self, email: str) -> Optional[Customer]:
        """Case-insensitive lookup by email"""
        matches = self.storage.find(self.table_name, {"email": normalize_email(email)})
        return Customer.from_dict(matches[0]) if matches else None

    def list_customers(self) -> List[Customer]:
        return [Customer.from_dict(data) for data in self.storage.load_all(self.table_name)]
