"""
Bank Engine

Lifecycle engine for customer-requested banking resources (accounts, cards,
loans) and the transfer ledger that moves funds between accounts. Role-gated
state machines, Decimal money math and compare-and-swap balance mutation.
"""

__version__ = "1.0.0"
