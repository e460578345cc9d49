"""
Banking System Module

Composition root: builds one isolated set of components around a single
storage handle. Nothing here is a module-level singleton, so tests and
embedding applications can run several systems side by side.
"""

from typing import Optional

from .accounts import AccountManager
from .applications import ApplicationApprovalTarget, CreditCardApplicationManager
from .audit import AuditRecorder, AuditTrail, NullAuditRecorder
from .config import BankCoreConfig
from .customers import CustomerDirectory
from .events import EventDispatcher
from .ledger import AccountLedger
from .loans import LoanApprovalTarget, LoanEngine
from .logging_config import get_logger, setup_logging
from .storage import StorageInterface, create_storage
from .transfers import TransferOrchestrator
from .workflows import ApprovalWorkflow


class BankingSystem:
    """Banking core with all components wired to one store"""

    def __init__(self, config: Optional[BankCoreConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 audit: Optional[AuditRecorder] = None,
                 configure_logging: bool = False):
        """
        Args:
            config: Settings; defaults to BankCoreConfig() read from the environment
            storage: Store to use instead of the one the config names
            audit: Recorder to use instead of the configured audit trail
            configure_logging: Install the "bankcore" log handler using the
                config's log_level, log_format and log_file
        """
        self.config = config or BankCoreConfig()
        if configure_logging:
            setup_logging(self.config.log_level, fmt=self.config.log_format, log_file=self.config.log_file)
        self.storage = storage or create_storage(self.config)
        self.logger = get_logger("bankcore.system")

        if audit is not None:
            self.audit = audit
        elif self.config.enable_audit_logging:
            self.audit = AuditTrail(self.storage)
        else:
            self.audit = NullAuditRecorder()

        self.events = EventDispatcher()
        dispatcher = self.events if self.config.enable_notifications else None

        self.customers = CustomerDirectory(self.storage, self.audit)
        self.ledger = AccountLedger(self.storage, self.config, self.audit, dispatcher)
        self.accounts = AccountManager(self.storage, self.ledger, self.config, self.audit, dispatcher)
        self.transfers = TransferOrchestrator(
            self.storage, self.ledger, self.customers, self.config, self.audit, dispatcher
        )
        self.loans = LoanEngine(self.storage, self.config, self.audit, dispatcher)
        self.card_applications = CreditCardApplicationManager(self.storage, self.config, self.audit, dispatcher)
        self.loan_approvals = ApprovalWorkflow(self.storage, LoanApprovalTarget(), self.audit, dispatcher)
        self.card_approvals = ApprovalWorkflow(
            self.storage, ApplicationApprovalTarget(), self.audit, dispatcher
        )

        self.logger.info(f"Banking core started with {self.config.storage_backend} storage")

    def close(self) -> None:
        self.storage.close()
