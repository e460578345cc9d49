#!/usr/bin/env python3
"""
Example: A day at the bank

Opens accounts, moves money, takes out and repays a loan, and reviews a
credit card application, all through one BankingSystem.
"""

import os
import sys
from decimal import Decimal

# Add the bankcore package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from bankcore.accounts import AccountType
from bankcore.applications import CardType, EmploymentStatus
from bankcore.config import BankCoreConfig
from bankcore.currency import Currency, Money
from bankcore.errors import DomainError
from bankcore.loans import LoanType
from bankcore.principals import CustomerPrincipal, EmployeePrincipal, EmployeeRole
from bankcore.system import BankingSystem


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def main():
    print("🏦 BankCore - Basic Usage Example")
    print("=" * 60)

    config = BankCoreConfig(log_format="text")
    system = BankingSystem(config, configure_logging=True)
    admin = EmployeePrincipal("emp-001", EmployeeRole.ADMIN)

    # 1. Customers and accounts
    print("\n1. 👤 Customers and accounts")
    alice = CustomerPrincipal(system.customers.register_customer("alice@example.com", "Alice", "Smith").id)
    bob = CustomerPrincipal(system.customers.register_customer("bob@example.com", "Bob", "Jones").id)

    alice_checking = system.accounts.open_account(alice, AccountType.CHECKING, initial_deposit=usd("1500.00"))
    alice_savings = system.accounts.open_account(alice, AccountType.SAVINGS)
    bob_savings = system.accounts.open_account(bob, AccountType.SAVINGS, initial_deposit=usd("50.00"))
    print(f"   Alice checking {alice_checking.account_number}: {alice_checking.balance}")
    print(f"   Bob savings    {bob_savings.account_number}: {bob_savings.balance}")

    # 2. Transfers
    print("\n2. 💸 Transfers")
    own = system.transfers.transfer_own_accounts(alice_checking.id, alice_savings.id, usd("400.00"), alice)
    print(f"   Own account transfer {own.reference_number}")
    p2p = system.transfers.transfer_to_user(alice_checking.id, "bob@example.com", usd("120.00"), alice)
    print(f"   Sent to Bob          {p2p.reference_number}")

    try:
        system.transfers.transfer_to_user(bob_savings.id, "alice@example.com", usd("10000.00"), bob)
    except DomainError as e:
        print(f"   Rejected: {e}")

    # 3. Loan
    print("\n3. 🏠 Loan")
    loan = system.loans.apply_for_loan(alice, LoanType.PERSONAL, usd("12000.00"), 12, Decimal("12"))
    print(f"   Applied, EMI {loan.monthly_emi}")
    system.loan_approvals.approve(loan.id, admin)
    payment = system.loans.apply_payment(loan.id, loan.monthly_emi, alice)
    print(f"   Installment {payment.installment.installment_number} {payment.installment.status.value}, "
          f"outstanding {payment.loan.outstanding_balance}")

    # 4. Credit card application
    print("\n4. 💳 Credit card application")
    application = system.card_applications.apply(
        bob, CardType.GOLD, "Bob Jones", usd("85000.00"), EmploymentStatus.SELF_EMPLOYED
    )
    approved = system.card_approvals.approve(application.id, admin)
    print(f"   {approved.card_type.value} card {approved.status.value}, limit {approved.credit_limit}")

    # 5. Ledger and audit checks
    print("\n5. 🔍 Integrity")
    for account in (alice_checking, alice_savings, bob_savings):
        balance = system.ledger.get_balance(account.id)
        print(f"   {account.account_number}: {balance} (ledger ok: {system.ledger.verify_account(account.id)})")
    integrity = system.audit.verify_integrity()
    print(f"   Audit chain valid: {integrity['valid']} ({integrity['total_events']} events)")

    system.close()
    print("\n✅ Done")


if __name__ == "__main__":
    main()
