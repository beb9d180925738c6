"""
Deposit Ledger

Account ledger and money-movement core: deposit-account lifecycle,
append-only transaction ledger, atomic transfers between accounts and
card status synchronization. All money uses Decimal precision.
"""

__version__ = "1.0.0"
