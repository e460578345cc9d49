"""
Bank Core

Ledger and transaction engine for a retail bank: account balance mutation
with an append-only entry log, atomic transfers, loan amortization and the
approval workflow shared by loans and credit-card applications.
"""

__version__ = "1.0.0"
