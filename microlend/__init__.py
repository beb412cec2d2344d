"""
Microlend

Micro-lending back-office core: loan lifecycle, repayment schedules,
payment collection and an append-only cash ledger. All monetary figures
are derived on demand from payments and ledger entries using Decimal.
"""

__version__ = "1.0.0"
